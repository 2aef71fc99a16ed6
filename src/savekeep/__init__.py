"""
SaveKeep -- offline-first save-game manager.

Games, characters and saves live on the device first. Whenever a
session is online they travel to the server and back, joined by uuid.
Go offline for a week; nothing is lost.
"""

import os

__version__ = "0.1.0"

SAVEKEEP_HOME = os.environ.get("SAVEKEEP_HOME", "~/.savekeep")
