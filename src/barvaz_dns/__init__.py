"""
Barvaz DNS - keeps DuckDNS hostnames pointed at the host's public address.

This package provides a background service that periodically updates
DuckDNS records and a local control channel used to reconfigure it at
runtime.
"""

__version__ = "0.1.0"
__author__ = "Barvaz DNS Contributors"
