"""
Interactive, stepwise playlist building.

The session offers the nearest unvisited songs to the last chosen one and
waits for a choice. Choices come from a ``ChoiceProvider`` so the loop runs
the same way from a terminal prompt or from a scripted test.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, Optional, Protocol, Sequence, Set, Union

from soundalike.exceptions import InvalidChoice, NotFound, SessionError
from soundalike.models import TrackRecord
from soundalike.playlist import Playlist, PlaylistBuilder, SeedLike, Strategy


logger = logging.getLogger(__name__)


DEFAULT_CHOICES = 3


class SessionState(enum.Enum):
    IDLE = "idle"
    AWAITING_CHOICE = "awaiting-choice"
    FINISHED = "finished"


@dataclass(frozen=True)
class Candidate:
    """A song offered to the user, with its distance to the last pick."""

    reference: str
    distance: float
    record: TrackRecord = field(compare=False, repr=False)

    @property
    def label(self) -> str:
        if self.record.title:
            artist = self.record.artist or "Unknown artist"
            return f"{artist} - {self.record.title}"
        return self.reference


class ChoiceProvider(Protocol):
    """Source of choices; ``offer`` returns a reference or None to stop."""

    def offer(self, candidates: Sequence[Candidate]) -> Optional[str]:
        ...


class ScriptedChoiceProvider:
    """Replays a fixed list of choices.

    Each item is a reference, an index into the offered candidates, or None
    to stop. The session stops once the script runs out.
    """

    def __init__(self, script: Iterable[Union[str, int, None]]):
        self._script: Iterator[Union[str, int, None]] = iter(script)
        self.offers: List[List[str]] = []

    def offer(self, candidates: Sequence[Candidate]) -> Optional[str]:
        self.offers.append([c.reference for c in candidates])
        choice = next(self._script, None)
        if isinstance(choice, int):
            return candidates[choice].reference
        return choice


class InteractiveSession:
    """State machine: IDLE -> AWAITING_CHOICE -> FINISHED."""

    def __init__(self, builder: PlaylistBuilder, choices: int = DEFAULT_CHOICES):
        """Initialize the session.

        Args:
            builder: Builder over the snapshot the session picks from.
            choices: Number of candidates offered at each step.
        """
        if choices < 1:
            raise ValueError(f"At least one choice must be offered, got {choices}")
        self.builder = builder
        self.choices = choices
        self.state = SessionState.IDLE
        self.seed: Optional[TrackRecord] = None
        self.current: Optional[TrackRecord] = None
        self.history: Set[str] = set()
        self.offered: List[Candidate] = []
        self._tracks: List[TrackRecord] = []
        self._distances: List[float] = []

    def _require(self, state: SessionState, action: str) -> None:
        if self.state is not state:
            raise SessionError(
                f"Cannot {action} while the session is {self.state.value}",
                details={"state": self.state.value},
            )

    def _offer(self) -> List[Candidate]:
        pool = self.builder.candidates([self.current], exclude=self.history)
        if not pool:
            logger.info("No more songs to offer, the session is finished")
            self.offered = []
            self.state = SessionState.FINISHED
            return []

        nearest = self.builder.ranked(self.current, self.choices, exclude=self.history)
        self.offered = [
            Candidate(reference=track.reference, distance=dist, record=track)
            for track, dist in zip(nearest.tracks, nearest.distances)
        ]
        self.state = SessionState.AWAITING_CHOICE
        return self.offered

    def start(self, seed: SeedLike, history: Iterable[str] = ()) -> List[Candidate]:
        """Start from ``seed``, never offering anything in ``history``.

        Returns:
            The first candidates; empty if nothing can be offered.

        Raises:
            NotFound: If the seed has not been analyzed.
            SessionError: If the session was already started.
        """
        self._require(SessionState.IDLE, "start")
        reference = seed.reference if isinstance(seed, TrackRecord) else seed
        self.seed = self.builder.snapshot.get(reference)
        self.current = self.seed
        self.history = set(history) | {self.seed.reference}
        logger.debug(f"Interactive session started from '{self.seed.reference}'")
        return self._offer()

    def continue_from(self, queue_references: Sequence[str]) -> List[Candidate]:
        """Resume from the last song of an existing queue.

        The whole queue counts as history.

        Raises:
            NotFound: If the queue is empty or its last song is not analyzed.
        """
        if not queue_references:
            raise NotFound(
                "No song is currently playing. Add a song to start the playlist from, "
                "and try again."
            )
        return self.start(queue_references[-1], history=queue_references)

    def choose(self, candidate: Union[Candidate, str]) -> List[Candidate]:
        """Append one of the last offered candidates and offer the next ones.

        Raises:
            InvalidChoice: If ``candidate`` was not among the last offered.
            SessionError: If no choice is awaited.
        """
        self._require(SessionState.AWAITING_CHOICE, "choose")
        reference = candidate.reference if isinstance(candidate, Candidate) else candidate

        chosen = next((c for c in self.offered if c.reference == reference), None)
        if chosen is None:
            raise InvalidChoice(
                f"'{reference}' was not one of the offered songs",
                details={"reference": reference, "offered": [c.reference for c in self.offered]},
            )

        self._tracks.append(chosen.record)
        self._distances.append(chosen.distance)
        self.history.add(reference)
        self.current = chosen.record
        return self._offer()

    def stop(self) -> Playlist:
        """Finish the session, keeping what was chosen so far."""
        self.state = SessionState.FINISHED
        self.offered = []
        return self.playlist

    @property
    def playlist(self) -> Playlist:
        return Playlist(
            tracks=tuple(self._tracks),
            distances=tuple(self._distances),
            seeds=(self.seed.reference,) if self.seed is not None else (),
            strategy=Strategy.INTERACTIVE,
            metric=self.builder.metric,
        )

    def run(
        self,
        provider: ChoiceProvider,
        on_choice: Optional[Callable[[TrackRecord], None]] = None,
    ) -> Playlist:
        """Drive a started session until the provider stops or the pool runs out.

        Args:
            provider: Source of choices.
            on_choice: Called with each chosen record, e.g. to queue it.

        Returns:
            The accumulated playlist.
        """
        if self.state is SessionState.IDLE:
            raise SessionError("Start the session before running it")

        while self.state is SessionState.AWAITING_CHOICE:
            reference = provider.offer(list(self.offered))
            if reference is None:
                break
            self.choose(reference)
            if on_choice is not None:
                on_choice(self.current)

        return self.stop()
