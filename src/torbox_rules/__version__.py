"""Version information for torbox-rules"""

__version__ = '0.3.0'
__description__ = 'Automation rule engine for TorBox downloads'
