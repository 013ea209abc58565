"""Test package marker.

Pytest can import test modules by basename. Making `tests/` a package ensures
fully-qualified module names and prevents `import file mismatch` collection
errors between subdirectories.
"""

import sys
from pathlib import Path

# Ensure src directory is in Python path for all test modules
_project_root = Path(__file__).resolve().parent.parent
_src_path = _project_root / "src"

for _path in (_project_root, _src_path):
    _path_str = str(_path)
    if _path_str not in sys.path:
        sys.path.insert(0, _path_str)
