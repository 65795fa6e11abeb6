#!/usr/bin/env python
"""
Main entry point for soundalike.
"""

from soundalike.cli import main

if __name__ == "__main__":
    main()
