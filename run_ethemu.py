#!/usr/bin/env python3
"""
Root launcher for ethemu.
Imports the CLI module and calls its main() function.
"""
import sys
import os

# Ensure the current directory is in the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ethemu.cli import main

if __name__ == "__main__":
    sys.exit(main())
