"""
Root conftest: puts backend/ on sys.path before collection so

    from changedesk.xxx import yyy

works in tests without `pip install -e .` first.
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent / "backend"))
