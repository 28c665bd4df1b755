#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/dnsmasq_webhook`. This wrapper allows
`./dnsmasq-webhook.py` to be run straight from a checkout, e.g. on a router
without pip.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from dnsmasq_webhook.cli import main  # noqa: E402


if __name__ == "__main__":
    sys.exit(main())
