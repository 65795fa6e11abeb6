"""
Minimal CUE sheet parser for multi-track container files.

Only the commands needed to list tracks are understood: FILE, TRACK, TITLE,
PERFORMER, REM GENRE/DISCNUMBER and INDEX 01. Timestamps are ``mm:ss:ff``
with 75 frames per second.
"""

import logging
import os
import re
import shlex
from dataclasses import dataclass, field
from typing import List, Optional


logger = logging.getLogger(__name__)


FRAMES_PER_SECOND = 75

_TIMESTAMP_RE = re.compile(r"^(\d+):(\d{2}):(\d{2})$")


@dataclass
class CueTrack:
    """One TRACK block of a CUE sheet."""

    number: int
    audio_file: str
    title: Optional[str] = None
    performer: Optional[str] = None
    start: float = 0.0
    end: Optional[float] = None

    @property
    def duration(self) -> Optional[float]:
        if self.end is None:
            return None
        return self.end - self.start


@dataclass
class CueSheet:
    """A parsed CUE sheet; paths of audio files are absolute."""

    path: str
    title: Optional[str] = None
    performer: Optional[str] = None
    genre: Optional[str] = None
    disc_number: Optional[int] = None
    tracks: List[CueTrack] = field(default_factory=list)

    @property
    def audio_files(self) -> List[str]:
        return sorted({track.audio_file for track in self.tracks})

    def track(self, number: int) -> Optional[CueTrack]:
        for track in self.tracks:
            if track.number == number:
                return track
        return None


def parse_timestamp(value: str) -> float:
    """Convert a ``mm:ss:ff`` CUE timestamp to seconds."""
    match = _TIMESTAMP_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid CUE timestamp: {value!r}")
    minutes, seconds, frames = (int(part) for part in match.groups())
    return minutes * 60 + seconds + frames / FRAMES_PER_SECOND


def _split(line: str) -> List[str]:
    try:
        return shlex.split(line)
    except ValueError:
        return line.split()


def _read_text(path: str) -> str:
    with open(path, "rb") as f:
        raw = f.read()
    for encoding in ("utf-8-sig", "cp1252", "latin-1"):
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="replace")


def parse_cue(path: str) -> CueSheet:
    """Parse a CUE sheet.

    Args:
        path: Path to the ``.cue`` file.

    Returns:
        The parsed sheet. Track end times are filled from the start of the
        next track in the same audio file.

    Raises:
        ValueError: If the sheet has no playable track.
    """
    sheet = CueSheet(path=path)
    base_dir = os.path.dirname(os.path.abspath(path))
    current_file: Optional[str] = None
    current: Optional[CueTrack] = None

    for raw_line in _read_text(path).splitlines():
        parts = _split(raw_line.strip())
        if not parts:
            continue
        command = parts[0].upper()
        args = parts[1:]

        if command == "FILE" and args:
            current_file = os.path.join(base_dir, args[0])
        elif command == "TRACK" and args:
            if current_file is None:
                raise ValueError(f"TRACK before FILE in {path}")
            if len(args) > 1 and args[1].upper() != "AUDIO":
                current = None
                continue
            current = CueTrack(number=int(args[0]), audio_file=current_file)
            sheet.tracks.append(current)
        elif command == "TITLE" and args:
            if current is None:
                sheet.title = args[0]
            else:
                current.title = args[0]
        elif command == "PERFORMER" and args:
            if current is None:
                sheet.performer = args[0]
            else:
                current.performer = args[0]
        elif command == "INDEX" and len(args) >= 2 and current is not None:
            if int(args[0]) == 1:
                current.start = parse_timestamp(args[1])
        elif command == "REM" and len(args) >= 2 and current is None:
            if args[0].upper() == "GENRE":
                sheet.genre = " ".join(args[1:])
            elif args[0].upper() == "DISCNUMBER":
                try:
                    sheet.disc_number = int(args[1])
                except ValueError:
                    logger.debug(f"Ignoring invalid DISCNUMBER in {path}: {args[1]}")

    if not sheet.tracks:
        raise ValueError(f"No audio track found in CUE sheet {path}")

    for track, following in zip(sheet.tracks, sheet.tracks[1:]):
        if following.audio_file == track.audio_file:
            track.end = following.start

    return sheet
