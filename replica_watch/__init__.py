"""Replica Watcher: checks that file changes reach every replica web server.

Watches a source folder and, for each created, changed, renamed or deleted
file, asks every configured web server whether it already serves the
change, reporting one verdict per server.
"""

__version__ = "1.0.0"
__app_name__ = "Replica Watcher"
