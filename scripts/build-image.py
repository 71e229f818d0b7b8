#!/usr/bin/env python3
"""
Image Build Script

Create a temporary Hyperstack VM, provision it over SSH, snapshot it and
turn the snapshot into a reusable image.

Usage: build-image.py <config-file>
"""

import sys

from hyperstack_builder.cli import main

if __name__ == '__main__':
    sys.exit(main())
