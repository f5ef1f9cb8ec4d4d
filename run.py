#!/usr/bin/env python3
"""
run.py — Launch the obs-link CLI without installing.

Usage (from the repository root):
    python run.py watch
    python run.py watch --password mypassword
    python run.py check
    python run.py init-config
    python run.py key decode "Show<::>Live<::>7<::>Camera"
"""
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent))

from obs_link.main import app

if __name__ == "__main__":
    app()
