"""
Tests for the interactive session module.
"""

import numpy as np
import pytest

from soundalike.distance import DistanceMetric
from soundalike.exceptions import InvalidChoice, NotFound, SessionError
from soundalike.models import TrackRecord
from soundalike.playlist import LibrarySnapshot, PlaylistBuilder, Strategy
from soundalike.session import (
    Candidate,
    InteractiveSession,
    ScriptedChoiceProvider,
    SessionState,
)


@pytest.fixture
def builder():
    """Six tracks on a line, one duplicate of the seed."""
    records = [
        TrackRecord(path=f"{i}.mp3", vector=np.array([float(i), 0.0]), title=f"t{i}", artist="X")
        for i in range(6)
    ]
    records.append(TrackRecord(path="copy.mp3", vector=np.array([0.5, 0.0]), title="T0", artist="x"))
    return PlaylistBuilder(LibrarySnapshot(records), DistanceMetric.euclidean())


class TestInteractiveSession:
    """Tests for InteractiveSession."""

    def test_initial_state(self, builder):
        """Test a new session is idle."""
        session = InteractiveSession(builder)
        assert session.state is SessionState.IDLE
        assert len(session.playlist) == 0

    def test_start_offers_nearest(self, builder):
        """Test start offers the k nearest candidates."""
        session = InteractiveSession(builder, choices=2)
        offered = session.start("0.mp3")

        assert session.state is SessionState.AWAITING_CHOICE
        assert [c.reference for c in offered] == ["1.mp3", "2.mp3"]
        assert offered[0].distance == pytest.approx(1.0)

    def test_duplicates_of_seed_never_offered(self, builder):
        """Test a duplicate of the seed is not a candidate."""
        session = InteractiveSession(builder, choices=10)
        offered = session.start("0.mp3")
        assert "copy.mp3" not in [c.reference for c in offered]

    def test_choose_reoffers_from_choice(self, builder):
        """Test choosing recomputes candidates around the choice."""
        session = InteractiveSession(builder, choices=2)
        session.start("0.mp3")
        offered = session.choose("2.mp3")

        assert [c.reference for c in offered] == ["1.mp3", "3.mp3"]
        assert session.playlist.references == ["2.mp3"]
        assert session.current.reference == "2.mp3"

    def test_choose_candidate_object(self, builder):
        """Test a Candidate can be passed back directly."""
        session = InteractiveSession(builder, choices=1)
        offered = session.start("0.mp3")
        session.choose(offered[0])
        assert session.playlist.references == ["1.mp3"]

    def test_invalid_choice(self, builder):
        """Test choosing a song that was not offered fails."""
        session = InteractiveSession(builder, choices=2)
        session.start("0.mp3")

        with pytest.raises(InvalidChoice):
            session.choose("5.mp3")
        assert session.state is SessionState.AWAITING_CHOICE

    def test_visited_never_offered(self, builder):
        """Test no visited track is offered again."""
        session = InteractiveSession(builder, choices=3)
        offered = session.start("0.mp3")
        visited = {"0.mp3"}
        while session.state is SessionState.AWAITING_CHOICE:
            assert visited.isdisjoint(c.reference for c in offered)
            pick = offered[-1].reference
            visited.add(pick)
            offered = session.choose(pick)

        assert session.state is SessionState.FINISHED
        assert len(session.playlist) == 5

    def test_exhaustion_finishes(self, builder):
        """Test the session finishes once every song was chosen."""
        session = InteractiveSession(builder, choices=1)
        session.start("0.mp3")
        for reference in ["1.mp3", "2.mp3", "3.mp3", "4.mp3"]:
            session.choose(reference)
        assert session.state is SessionState.AWAITING_CHOICE

        assert session.choose("5.mp3") == []
        assert session.state is SessionState.FINISHED

        with pytest.raises(SessionError):
            session.choose("5.mp3")

    def test_stop_keeps_playlist(self, builder):
        """Test stop finishes and keeps what was chosen."""
        session = InteractiveSession(builder, choices=2)
        session.start("0.mp3")
        session.choose("1.mp3")

        playlist = session.stop()

        assert session.state is SessionState.FINISHED
        assert playlist.references == ["1.mp3"]
        assert playlist.strategy is Strategy.INTERACTIVE
        assert playlist.seeds == ("0.mp3",)

    def test_start_twice(self, builder):
        """Test a session cannot be started twice."""
        session = InteractiveSession(builder)
        session.start("0.mp3")
        with pytest.raises(SessionError):
            session.start("1.mp3")

    def test_start_unknown_seed(self, builder):
        """Test an unanalyzed seed raises NotFound."""
        with pytest.raises(NotFound):
            InteractiveSession(builder).start("nope.mp3")

    def test_history_excluded(self, builder):
        """Test history references are never offered."""
        session = InteractiveSession(builder, choices=2)
        offered = session.start("0.mp3", history=["1.mp3"])
        assert [c.reference for c in offered] == ["2.mp3", "3.mp3"]

    def test_continue_from_queue(self, builder):
        """Test continue seeds from the last queued song."""
        session = InteractiveSession(builder, choices=2)
        offered = session.continue_from(["0.mp3", "3.mp3", "4.mp3"])

        assert session.seed.reference == "4.mp3"
        assert [c.reference for c in offered] == ["5.mp3", "2.mp3"]

    def test_continue_from_empty_queue(self, builder):
        """Test continuing from nothing raises NotFound."""
        with pytest.raises(NotFound):
            InteractiveSession(builder).continue_from([])

    def test_invalid_choices_count(self, builder):
        """Test at least one candidate must be offered."""
        with pytest.raises(ValueError):
            InteractiveSession(builder, choices=0)


class TestRun:
    """Tests for driving a session with a choice provider."""

    def test_scripted_run(self, builder):
        """Test a scripted provider drives the session until it stops."""
        session = InteractiveSession(builder, choices=2)
        session.start("0.mp3")
        provider = ScriptedChoiceProvider(["1.mp3", 1, None])
        chosen = []

        playlist = session.run(provider, on_choice=lambda record: chosen.append(record.reference))

        assert playlist.references == ["1.mp3", "3.mp3"]
        assert chosen == ["1.mp3", "3.mp3"]
        assert provider.offers[0] == ["1.mp3", "2.mp3"]
        assert provider.offers[1] == ["2.mp3", "3.mp3"]
        assert session.state is SessionState.FINISHED

    def test_script_exhausted_stops(self, builder):
        """Test the session stops when the script runs out."""
        session = InteractiveSession(builder, choices=2)
        session.start("0.mp3")
        playlist = session.run(ScriptedChoiceProvider([0]))
        assert playlist.references == ["1.mp3"]

    def test_run_until_pool_exhausted(self, builder):
        """Test a run ends by itself once no song is left."""
        session = InteractiveSession(builder, choices=1)
        session.start("0.mp3")
        playlist = session.run(ScriptedChoiceProvider([0] * 20))
        assert playlist.references == ["1.mp3", "2.mp3", "3.mp3", "4.mp3", "5.mp3"]

    def test_run_requires_start(self, builder):
        """Test running an idle session fails."""
        with pytest.raises(SessionError):
            InteractiveSession(builder).run(ScriptedChoiceProvider([]))

    def test_invalid_scripted_choice(self, builder):
        """Test a scripted reference that was not offered fails the run."""
        session = InteractiveSession(builder, choices=1)
        session.start("0.mp3")
        with pytest.raises(InvalidChoice):
            session.run(ScriptedChoiceProvider(["5.mp3"]))

    def test_candidate_label(self, builder):
        """Test candidates render as artist and title."""
        record = builder.snapshot.get("1.mp3")
        assert Candidate("1.mp3", 1.0, record).label == "X - t1"
