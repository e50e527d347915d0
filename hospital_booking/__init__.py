"""Hospital slot and appointment booking engine"""

__version__ = "1.0.0"
