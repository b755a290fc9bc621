from __future__ import annotations

import importlib.util

# BDD scenarios need the optional pytest-bdd plugin.
# Skip collecting them when it is not installed.
if importlib.util.find_spec("pytest_bdd") is None:
    collect_ignore_glob = ["tests/bdd/*"]
