from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, Dict, Any, Generator, Union

PathLike = Union[str, Path]

logger = logging.getLogger(__name__)


def read_jsonl(path: PathLike, *, stream: bool = False) -> Iterable[Dict[str, Any]]:
    """Read a JSONL file into memory or stream it line by line.

    Parameters
    ----------
    path : str | Path
        The JSONL file path.
    stream : bool
        If True, yield entries lazily (generator).
        If False, return a full list of entries.

    Returns
    -------
    Iterable[Dict[str, Any]]
    """
    p = Path(path)
    if not p.exists():
        return [] if not stream else iter(())

    def _iter() -> Generator[Dict[str, Any], None, None]:
        with open(p, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning("Skipping corrupt line %d in %s: %s", line_no, p, e)
                    continue

    return _iter() if stream else list(_iter())
