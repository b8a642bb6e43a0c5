# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Allow running limacharlie as a module:
    python -m limacharlie whoami
    python -m limacharlie push org.yaml --sections dr_rules --dry-run
"""

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
