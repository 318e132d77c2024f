"""Tests for the session state machine: ready-up, rounds, chat, end of story."""

import asyncio

import pytest

from script_kill.errors import (
    InvalidRoster,
    NotFinalRound,
    NotHost,
    NotParticipant,
    RoundLimitExceeded,
    RoundMismatch,
    RoundNotOpen,
    SessionFinished,
    SessionNotFound,
)
from script_kill.models import AINPCConfig, GameSummary
from script_kill.pipeline import SessionEngine, synthesize_all_personal_scripts
from script_kill.pipeline.session import assign_characters


def _rounds(engine: SessionEngine, session_id: str) -> list[int]:
    return [r.round for r in engine.get_session(session_id).round_records]


# ---------------------------------------------------------------------------
# Creation and character assignment
# ---------------------------------------------------------------------------

class TestCreate:
    def test_starts_in_preparing(self, engine, session) -> None:
        stored = engine.get_session(session.id)
        assert stored.status == "preparing"
        assert stored.round_records == []
        assert stored.ready_players == []
        assert stored.rounds == 3
        assert stored.version == 1

    def test_explicit_character_mapping(self, session) -> None:
        assert session.player_characters == {"alice": "char_1", "bob": "char_2"}
        assert session.ai_characters == {"npc_ash": "char_3"}
        assert session.ai_npcs[0].character_name == "Character 3"

    def test_main_character_count_must_match_players(self, engine, script) -> None:
        with pytest.raises(InvalidRoster, match="2 main characters for 3 players"):
            engine.create_session(script, host_id="alice", players=["alice", "bob", "carol"])

    def test_host_must_play(self, engine, script) -> None:
        with pytest.raises(InvalidRoster):
            engine.create_session(script, host_id="zed", players=["alice", "bob"])

    def test_duplicate_players_rejected(self, engine, script) -> None:
        with pytest.raises(InvalidRoster):
            engine.create_session(script, host_id="alice", players=["alice", "alice"])

    def test_duplicate_npc_ids_rejected(self, engine, script) -> None:
        npcs = [AINPCConfig(id="n1", name="A"), AINPCConfig(id="n1", name="B")]
        with pytest.raises(InvalidRoster, match="NPC ids must be unique"):
            engine.create_session(script, host_id="alice", players=["alice"], ai_npcs=npcs)
        assert engine.storage.list_sessions() == []

    def test_too_many_npcs(self, engine, script) -> None:
        npcs = [AINPCConfig(id="n1", name="A"), AINPCConfig(id="n2", name="B")]
        with pytest.raises(InvalidRoster, match="supporting"):
            engine.create_session(script, host_id="alice", players=["alice", "bob"], ai_npcs=npcs)

    def test_npc_keeps_requested_character(self, script) -> None:
        _, npcs = assign_characters(script, ["a", "b"], [AINPCConfig(id="n", name="N", character_id="char_3")])
        assert npcs[0].character_id == "char_3"

    def test_npc_cannot_take_main_character(self, script) -> None:
        with pytest.raises(InvalidRoster):
            assign_characters(script, ["a", "b"], [AINPCConfig(id="n", name="N", character_id="char_1")])

    def test_unknown_session(self, engine) -> None:
        with pytest.raises(SessionNotFound):
            engine.get_session("game_nope")

    async def test_unknown_ids_leave_no_lock_behind(self, engine) -> None:
        for i in range(20):
            with pytest.raises(SessionNotFound):
                await engine.mark_ready(f"game_bogus_{i}", "alice")
        assert engine._locks == {}


# ---------------------------------------------------------------------------
# Ready-up
# ---------------------------------------------------------------------------

class TestReady:
    async def test_round_one_opens_when_all_ready(self, engine, session, script) -> None:
        partial = await engine.mark_ready(session.id, "alice")
        assert partial.status == "preparing"
        assert partial.round_records == []

        ready = await engine.mark_ready(session.id, "bob")
        assert ready.status == "story_reading"
        assert [r.round for r in ready.round_records] == [1]
        assert ready.round_records[0].plot == script.round_contents[0].plot
        assert ready.round_records[0].private_clues == script.round_contents[0].private_clues

    async def test_ready_is_idempotent(self, engine, session) -> None:
        await engine.mark_ready(session.id, "alice")
        again = await engine.mark_ready(session.id, "alice")
        assert again.ready_players == ["alice"]
        assert again.round_records == []

    async def test_late_ready_does_not_reopen(self, engine, playing) -> None:
        again = await engine.mark_ready(playing.id, "bob")
        assert [r.round for r in again.round_records] == [1]

    async def test_outsider_rejected(self, engine, session) -> None:
        with pytest.raises(NotParticipant):
            await engine.mark_ready(session.id, "mallory")


# ---------------------------------------------------------------------------
# Example game: rounds=3, two players, one NPC
# ---------------------------------------------------------------------------

async def test_example_scenario(engine, session):
    await engine.mark_ready(session.id, "alice")
    opened = await engine.mark_ready(session.id, "bob")
    assert opened.status == "story_reading"
    assert _rounds(engine, session.id) == [1]

    with pytest.raises(NotFinalRound):
        await engine.end_story(session.id, "alice")

    advanced = await engine.advance_round(session.id, "alice", 1, 2)
    assert advanced.status == "round_playing"
    assert _rounds(engine, session.id) == [1, 2]
    assert advanced.round_records[0].is_finished

    with pytest.raises(RoundMismatch):
        await engine.advance_round(session.id, "alice", 1, 2)
    assert _rounds(engine, session.id) == [1, 2]

    with pytest.raises(RoundMismatch):
        await engine.advance_round(session.id, "alice", 2, 4)
    assert _rounds(engine, session.id) == [1, 2]

    with pytest.raises(NotFinalRound):
        await engine.end_story(session.id, "alice")

    await engine.advance_round(session.id, "alice", 2, 3)
    assert _rounds(engine, session.id) == [1, 2, 3]

    result = await engine.end_story(session.id, "alice")
    assert result.confirmed == 1
    assert result.total == 2


# ---------------------------------------------------------------------------
# Advance round
# ---------------------------------------------------------------------------

class TestAdvance:
    async def test_host_only(self, engine, playing) -> None:
        with pytest.raises(NotHost):
            await engine.advance_round(playing.id, "bob", 1, 2)
        assert _rounds(engine, playing.id) == [1]

    async def test_cannot_open_round_one_by_hand(self, engine, session) -> None:
        with pytest.raises(RoundNotOpen):
            await engine.advance_round(session.id, "alice", 0, 1)
        assert _rounds(engine, session.id) == []

    @pytest.mark.parametrize("current,nxt", [(1, 1), (1, 3), (2, 1), (0, 1), (2, 3)])
    async def test_skip_and_rewind_rejected(self, engine, playing, current, nxt) -> None:
        with pytest.raises(RoundMismatch):
            await engine.advance_round(playing.id, "alice", current, nxt)
        assert _rounds(engine, playing.id) == [1]

    async def test_round_limit(self, engine, final_round) -> None:
        with pytest.raises(RoundLimitExceeded):
            await engine.advance_round(final_round.id, "alice", 3, 4)
        assert _rounds(engine, final_round.id) == [1, 2, 3]

    async def test_concurrent_advances_only_one_wins(self, engine, playing) -> None:
        results = await asyncio.gather(
            engine.advance_round(playing.id, "alice", 1, 2),
            engine.advance_round(playing.id, "alice", 1, 2),
            return_exceptions=True,
        )
        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert any(isinstance(r, RoundMismatch) for r in results)
        assert _rounds(engine, playing.id) == [1, 2]

    async def test_rejection_leaves_version_untouched(self, engine, playing) -> None:
        before = engine.get_session(playing.id).version
        with pytest.raises(NotHost):
            await engine.advance_round(playing.id, "bob", 1, 2)
        assert engine.get_session(playing.id).version == before


# ---------------------------------------------------------------------------
# Chat append
# ---------------------------------------------------------------------------

class TestAppend:
    async def test_rejected_before_round_one(self, engine, session) -> None:
        with pytest.raises(RoundNotOpen):
            await engine.append_message(session.id, "alice", "Anyone here?")

    async def test_goes_into_open_round_with_character_name(self, engine, playing) -> None:
        await engine.advance_round(playing.id, "alice", 1, 2)
        message = await engine.append_message(playing.id, "bob", "  I saw a light.  ")

        stored = engine.get_session(playing.id)
        assert stored.round_records[0].messages == []
        assert stored.round_records[1].messages == [message]
        assert message.sender_name == "Character 2"
        assert message.content == "I saw a light."
        assert not message.is_npc

    async def test_npc_message(self, engine, playing) -> None:
        message = await engine.append_message(playing.id, "npc_ash", "I was asleep.", is_npc=True)
        assert message.is_npc
        assert message.sender_name == "Character 3"

    async def test_explicit_sender_name_wins(self, engine, playing) -> None:
        message = await engine.append_message(playing.id, "alice", "Hello", sender_name="Mara")
        assert message.sender_name == "Mara"

    async def test_timestamps_never_go_backwards(self, engine, playing) -> None:
        for i in range(20):
            await engine.append_message(playing.id, "alice", f"line {i}")
        stamps = [m.timestamp for m in engine.get_session(playing.id).all_messages()]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)

    async def test_outsider_and_fake_npc_rejected(self, engine, playing) -> None:
        with pytest.raises(NotParticipant):
            await engine.append_message(playing.id, "mallory", "hi")
        with pytest.raises(NotParticipant):
            await engine.append_message(playing.id, "alice", "hi", is_npc=True)

    async def test_empty_content_rejected(self, engine, playing) -> None:
        with pytest.raises(ValueError):
            await engine.append_message(playing.id, "alice", "   ")

    async def test_rejected_after_finish(self, engine, final_round) -> None:
        await engine.end_story(final_round.id, "alice")
        await engine.end_story(final_round.id, "bob")
        with pytest.raises(SessionFinished):
            await engine.append_message(final_round.id, "alice", "one more thing")


# ---------------------------------------------------------------------------
# End story
# ---------------------------------------------------------------------------

class TestEndStory:
    async def test_quorum_waits_for_everyone(self, engine, final_round) -> None:
        first = await engine.end_story(final_round.id, "alice")
        assert (first.ended, first.confirmed, first.total) == (False, 1, 2)
        assert engine.get_session(final_round.id).status != "finished"

        repeat = await engine.end_story(final_round.id, "alice")
        assert (repeat.ended, repeat.confirmed) == (False, 1)

        last = await engine.end_story(final_round.id, "bob")
        assert (last.ended, last.confirmed, last.total) == (True, 2, 2)

        finished = engine.get_session(final_round.id)
        assert finished.status == "finished"
        assert finished.ended_by == "bob"
        assert finished.finished_at is not None
        assert finished.round_records[-1].is_finished
        assert set(finished.final_summary) == {"alice", "bob"}
        assert finished.final_summary["alice"] == GameSummary(player_id="alice")

    async def test_single_policy_ends_at_once(self, engine, script) -> None:
        session = engine.create_session(script, host_id="alice", players=["alice", "bob"], end_policy="single")
        await engine.mark_ready(session.id, "alice")
        await engine.mark_ready(session.id, "bob")
        await engine.advance_round(session.id, "alice", 1, 2)
        await engine.advance_round(session.id, "alice", 2, 3)

        result = await engine.end_story(session.id, "bob")
        assert result.ended
        stored = engine.get_session(session.id)
        assert stored.status == "finished"
        assert stored.ended_by == "bob"

    async def test_finished_session_rejects_host_actions(self, engine, final_round) -> None:
        await engine.end_story(final_round.id, "alice")
        await engine.end_story(final_round.id, "bob")
        with pytest.raises(SessionFinished):
            await engine.end_story(final_round.id, "alice")
        with pytest.raises(SessionFinished):
            await engine.advance_round(final_round.id, "alice", 3, 4)
        with pytest.raises(SessionFinished):
            await engine.mark_ready(final_round.id, "alice")

    async def test_outsider_cannot_end(self, engine, final_round) -> None:
        with pytest.raises(NotParticipant):
            await engine.end_story(final_round.id, "mallory")


# ---------------------------------------------------------------------------
# Summary slot and personal scripts
# ---------------------------------------------------------------------------

async def test_store_summary(engine, final_round):
    summary = GameSummary(player_id="bob", story_review="r", plot_analysis="a", story_elevation="e")
    stored = await engine.store_summary(final_round.id, "bob", summary)
    assert stored.final_summary == {"bob": summary}
    assert engine.get_session(final_round.id).final_summary["bob"] == summary


async def test_personal_script_lookup(engine, script, failing_llm):
    personal = await synthesize_all_personal_scripts(failing_llm, script)
    session = engine.create_session(
        script, host_id="alice", players=["alice", "bob"], personal_scripts=personal,
    )
    assert engine.personal_script_for(session.id, "bob").character_id == "char_2"
    with pytest.raises(NotParticipant):
        engine.personal_script_for(session.id, "mallory")
