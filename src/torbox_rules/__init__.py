"""
torbox-rules - automation rules for TorBox torrent, usenet and web downloads
"""

from torbox_rules.__version__ import __version__, __description__

__all__ = ['__version__', '__description__']
