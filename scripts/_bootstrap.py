from __future__ import annotations

import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]


def ensure_repo_root_on_sys_path() -> Path:
    """Make `import batstats...` work for `python scripts/<name>.py`.

    Running a script by path puts `scripts/` first on sys.path, not the repo
    root, and `batstats/` is a plain directory without an installed dist.
    """
    root_str = str(REPO_ROOT)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)
    return REPO_ROOT
