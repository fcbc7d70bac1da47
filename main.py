#!/usr/bin/env python3
"""
Development launcher for voxcap.

- Forces DEV=1 so logging runs at DEBUG
- Without arguments, runs the control server in the foreground
- Any arguments are passed straight to the voxcap CLI
- Ctrl-C exits cleanly
"""

import os
import sys

from voxcap.cli import main


if __name__ == "__main__":
    os.environ.setdefault("DEV", "1")
    argv = sys.argv[1:] or ["serve"]
    print(f"[dev] voxcap {' '.join(argv)}", flush=True)
    raise SystemExit(main(argv))
