"""regwatch - regulatory source monitoring and rule extraction."""

__version__ = "0.3.0"
