"""
Reading back the rotating log file.
"""

import os
from collections import deque
from typing import List, Optional

from zesty_backup import LOG_FILE_NAME


def log_file_path(log_dir: str) -> str:
    return os.path.join(log_dir, LOG_FILE_NAME)


def tail_log(log_dir: str, lines: int = 100) -> Optional[List[str]]:
    """
    Return the last lines of the log file.

    Args:
        log_dir: Directory holding zesty-backup.log
        lines: Number of lines to return

    Returns:
        List of lines without trailing newlines, or None if there is no log file
    """
    path = log_file_path(log_dir)
    if lines <= 0:
        return []
    try:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return [line.rstrip('\n') for line in deque(f, maxlen=lines)]
    except FileNotFoundError:
        return None
