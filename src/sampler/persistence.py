"""Durable storage of a run: the trial log and the metadata file.

``trials.log`` is append-only JSON Lines.  Each append is flushed and
fsynced before it returns, so a crash loses at most the line being
written.  ``meta.json`` is replaced atomically (temp file, fsync,
``os.replace``) so readers never see a half-written file.

:func:`load_progress` replays the trial log to rebuild coverage on
resume, skipping anything it cannot parse.
"""

from __future__ import annotations

import json
import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from src.sampler.records import TrialRecord

logger = logging.getLogger(__name__)

TRIALS_LOG = "trials.log"
META_FILE = "meta.json"
RUN_LOG = "run.log"


class TrialLog:
    """Append-only JSONL writer for :class:`TrialRecord` lines.

    A single process is assumed to write a given file; no lock is
    taken.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.appended = 0
        self._terminate_partial_line()

    def _terminate_partial_line(self) -> None:
        """Newline-terminate a line left unfinished by a crash.

        Keeps the next record on a line of its own, so the damaged
        line is the only one replay has to skip.
        """
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return
        if size == 0:
            return
        with open(self.path, "rb+") as fh:
            fh.seek(-1, os.SEEK_END)
            if fh.read(1) != b"\n":
                fh.write(b"\n")
                fh.flush()
                os.fsync(fh.fileno())
                logger.warning("Terminated partial last line of %s", self.path)

    def append(self, record: TrialRecord) -> None:
        """Write *record* as one line; durable when this returns."""
        line = json.dumps(record.to_json_dict(), ensure_ascii=False, separators=(",", ":"))
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(line + "\n")
            fh.flush()
            os.fsync(fh.fileno())
        self.appended += 1


@dataclass
class ResumeState:
    """Progress reconstructed from an existing trial log."""

    visited_by_pack: dict[str, set[int]] = field(default_factory=dict)
    lines_by_pack: Counter = field(default_factory=Counter)
    total_lines: int = 0
    malformed_lines: int = 0

    def visited(self, pack_id: str) -> set[int]:
        return self.visited_by_pack.get(pack_id, set())


def _parse_line(line: str) -> Optional[tuple[str, int]]:
    """Return ``(pack, trial_id)`` for a usable line, else ``None``."""
    obj = json.loads(line)
    if not isinstance(obj, dict):
        return None
    record = TrialRecord.from_json_dict(obj)
    if not record.pack_id or not isinstance(record.pack_id, str) or record.trial_id is None:
        return None
    return record.pack_id, record.trial_id


def load_progress(path: str | Path) -> ResumeState:
    """Stream *path* line by line and rebuild visited sets per pack.

    Malformed JSON, non-object lines and lines without a pack or a
    numeric trial id are skipped and counted.  A missing file yields
    an empty state.
    """
    state = ResumeState()
    path = Path(path)
    if not path.exists():
        return state

    with open(path, "r", encoding="utf-8", errors="replace") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            state.total_lines += 1
            try:
                parsed = _parse_line(line)
            except (json.JSONDecodeError, TypeError, ValueError) as exc:
                state.malformed_lines += 1
                logger.warning("Skipping malformed line %d of %s: %s", lineno, path, exc)
                continue
            if parsed is None:
                state.malformed_lines += 1
                logger.debug("Skipping line %d of %s: no pack/pair", lineno, path)
                continue
            pack, trial_id = parsed
            state.visited_by_pack.setdefault(pack, set()).add(trial_id)
            state.lines_by_pack[pack] += 1

    logger.info(
        "Replayed %s: %d lines, %d skipped, packs=%s",
        path,
        state.total_lines,
        state.malformed_lines,
        {p: len(v) for p, v in sorted(state.visited_by_pack.items())},
    )
    return state


class MetadataStore:
    """Atomic reader/writer of ``meta.json``."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, meta: dict[str, Any]) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(meta, fh, indent=2, ensure_ascii=False)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, self.path)

    def load(self) -> Optional[dict[str, Any]]:
        """Return the stored metadata, or ``None`` if absent or unreadable."""
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable %s: %s", self.path, exc)
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring %s: not a JSON object", self.path)
            return None
        return data


def existing_run_files(output_dir: str | Path) -> list[Path]:
    """Return run files already present in *output_dir*."""
    out = Path(output_dir)
    return [p for p in (out / TRIALS_LOG, out / META_FILE) if p.exists()]
