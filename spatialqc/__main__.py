#!/usr/bin/env python3
"""
SpatialQC Command Line Interface Entry Point
============================================

This module provides the entry point for running SpatialQC as a module:
    python -m spatialqc

It delegates to the main CLI functionality in cli.py
"""

from .cli import main

if __name__ == "__main__":
    main()
