"""Entry point for Replica Watcher.

Usage:
    python -m replica_watch start          Watch and verify in the foreground
    python -m replica_watch check FILE     Verify a single file once
"""

import sys

from replica_watch.service import main

if __name__ == "__main__":
    sys.exit(main())
