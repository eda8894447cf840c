"""
Nutri Dashboard Test Suite

Tests for the dashboard security utilities and services:
- Sanitizer, validators and rate limiter
- CSRF tokens
- Session inactivity timeout
- Patient, measurement and dashboard services
- REST API

Author: jetgause
Created: 2026-10-18
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
test_dir = Path(__file__).parent
project_root = test_dir.parent
sys.path.insert(0, str(project_root))

__version__ = "1.0.0"
__all__ = []
