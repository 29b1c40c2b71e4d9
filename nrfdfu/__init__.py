"""DFU package reading and the Nordic Secure DFU protocol over a pluggable BLE transport."""

__version__ = "0.4.0"