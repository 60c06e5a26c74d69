"""
Line-oriented ``KEY=value`` secrets file used to hand XMTP keys to the
client process.
"""

import os
import re
import logging
from pathlib import Path
from typing import Dict, List

logger = logging.getLogger(__name__)

XMTP_ENV_KEYS = ("XMTP_WALLET_KEY", "XMTP_DB_ENCRYPTION_KEY", "XMTP_ENV")

_LINE_RE = re.compile(r'^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=(.*)$')


def _match_key(line: str) -> str:
    match = _LINE_RE.match(line)
    return match.group(1) if match else ""


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def rewrite_env_lines(lines: List[str], values: Dict[str, str]) -> List[str]:
    """
    Apply ``values`` to the lines of an env file.

    Linear scan: the first line structurally matching a key is replaced,
    later lines for an already written key are dropped, unrelated lines are
    kept verbatim and keys never seen are appended once at the end.
    """
    written = set()
    result = []
    for line in lines:
        key = _match_key(line)
        if key in values:
            if key in written:
                continue
            written.add(key)
            result.append(f"{key}={values[key]}")
        else:
            result.append(line)

    for key, value in values.items():
        if key not in written:
            result.append(f"{key}={value}")
    return result


def read_env_vars(path: Path) -> Dict[str, str]:
    """Parse a ``KEY=value`` file; the first occurrence of a key wins."""
    path = Path(path)
    if not path.exists():
        return {}
    values: Dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        match = _LINE_RE.match(line)
        if match and match.group(1) not in values:
            values[match.group(1)] = _unquote(match.group(2))
    return values


def write_env_vars(path: Path, values: Dict[str, str]) -> Path:
    """
    Update ``values`` in the env file at ``path``, creating it if needed.

    The containing directory is created owner-only (0700) and the file is
    restricted to owner read/write (0600).
    """
    path = Path(path)
    lines: List[str] = []
    if path.exists():
        lines = path.read_text(encoding="utf-8").splitlines()
        while lines and not lines[-1].strip():
            lines.pop()

    next_lines = rewrite_env_lines(lines, values)

    if not path.parent.exists():
        path.parent.mkdir(parents=True, mode=0o700)

    # Owner-only from creation.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w', encoding="utf-8") as f:
        f.write("\n".join(next_lines) + "\n")
    path.chmod(0o600)

    logger.debug(f"Wrote {len(values)} XMTP variables to {path}")
    return path
