#!/usr/bin/env python3
"""
ProductionPortal CLI entrypoint (pp.py)

Daily production tracking for garment factories, backed by a git datarepo.

This file delegates to the productionportal CLI layer.
"""
from productionportal.cli.pp_cli import main

if __name__ == "__main__":
    main()
