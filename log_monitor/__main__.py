import argparse
import logging
import os
import sys

# This boilerplate allows the script to be run directly (e.g., `python log_monitor`)
# by adding the project root to the Python path, so the absolute imports below
# always resolve regardless of the execution method.
if __package__ is None or __package__ == '':
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from log_monitor import server, config

# --- Centralized Logging Configuration ---
log = logging.getLogger("LogMonitor")


def resolve_watch_files(args: list[str]) -> list[str]:
    """
    Combines --watch arguments with LOG_MONITOR_WATCH_FILES, keeping order and
    dropping duplicates. Relative paths are made absolute.
    """
    seen = set()
    paths = []
    for path in (args or []) + config.WATCH_FILES:
        abs_path = os.path.abspath(path)
        if abs_path in seen:
            continue
        seen.add(abs_path)
        if os.path.exists(abs_path):
            log.info(f"Configured log file '{abs_path}'.")
        else:
            log.warning(f"Log file does not currently exist at '{abs_path}' (it will be created).")
        paths.append(abs_path)
    return paths


def main():
    parser = argparse.ArgumentParser(
        description="Log Stream Monitor - collects, stores and live-streams log records from external processes",
        epilog="""
Examples:
  # Tail two project logs
  %(prog)s --watch /srv/GoPublic/camping/logs/app.log --watch /srv/GoPublic/cds/logs/server.log

  # Custom storage locations and port
  %(prog)s --watch /var/log/app.log --db /var/lib/log_monitor/logs.db --backup-dir /var/lib/log_monitor/mirror --port 7710
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--watch', action='append', metavar='PATH',
                        help="Log file to tail. Can be specified multiple times.")
    parser.add_argument('--db', default=config.DATABASE_FILE, help="SQLite database file.")
    parser.add_argument('--backup-dir', default=config.BACKUP_DIR, help="Directory for per-category mirror files.")
    parser.add_argument('--host', default=config.SERVER_HOST)
    parser.add_argument('--port', type=int, default=config.SERVER_PORT)
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    watch_files = resolve_watch_files(args.watch)
    server.run_server(watch_files, {'db_path': args.db, 'backup_dir': args.backup_dir},
                      host=args.host, port=args.port)


if __name__ == "__main__":
    main()
