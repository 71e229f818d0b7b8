"""Build Hyperstack GPU images from a temporary, SSH-provisioned VM."""

__version__ = "0.1.0"
