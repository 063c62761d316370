"""
agswitch - switch the Antigravity IDE between Google accounts.

Stores OAuth refresh tokens for several accounts and swaps the active
login by rewriting Antigravity's local state database.
"""

__version__ = "0.1.0"
__author__ = "Antigravity Switch contributors"

from agswitch.codec import encode, encode_base64
from agswitch.config import Settings
from agswitch.errors import AgSwitchError

__all__ = [
    "AgSwitchError",
    "Settings",
    "encode",
    "encode_base64",
    "__version__",
]
