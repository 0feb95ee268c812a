#!/usr/bin/env python3
"""
Entry point script for the RES event indexer.
"""
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from res_indexer.core.indexer.runner import main

if __name__ == "__main__":
    raise SystemExit(main())
