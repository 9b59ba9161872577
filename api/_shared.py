"""Shared setup for fedlicense Vercel endpoints.

Prefixed with _ so Vercel does NOT expose it as a route. Importing it puts
src/ on sys.path so the handlers can import the fedlicense package.
"""

import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT / "src") not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT / "src"))

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
