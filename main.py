#!/usr/bin/env python3
"""
Development launcher for meetguard.

- Stops meetguard.service on startup if running
- Runs the monitor daemon in the foreground with DEV logging
- Ctrl-C exits cleanly
"""

import os
import subprocess
import sys

from meetguard import monitor_daemon

SERVICE = "meetguard.service"


def stop_service():
    try:
        result = subprocess.run(["systemctl", "is-active", "--quiet", SERVICE], check=False)
    except FileNotFoundError:
        return
    if result.returncode == 0:
        print(f"[dev] Stopping {SERVICE} ...")
        subprocess.run(["systemctl", "stop", SERVICE], check=False)


def main(argv=None):
    stop_service()
    os.environ.setdefault("DEV", "1")
    print("[dev] Running monitor_daemon (Ctrl-C to exit)")
    try:
        return monitor_daemon.main(sys.argv[1:] if argv is None else argv)
    except KeyboardInterrupt:
        return 0
    finally:
        print("[dev] Exiting dev mode")


if __name__ == "__main__":
    sys.exit(main())
