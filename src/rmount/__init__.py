"""
RMount: S3-compatible storage, mounted locally.

Register S3 endpoints once, keep their credentials in an encrypted
vault, mount any of them as a live local directory, and carry the
vault between machines through a remote backup.
"""

import os

__version__ = "0.1.0"
__author__ = "rmount"

RMOUNT_HOME = os.environ.get("RMOUNT_HOME", "~/.rmount")
