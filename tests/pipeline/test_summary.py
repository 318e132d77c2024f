"""Tests for the end-of-game summary: gating, caching and fallbacks."""

import pytest

from script_kill.errors import NotFinalRound, NotParticipant
from script_kill.pipeline.summary import (
    DEFAULT_ANALYSIS,
    FALLBACK_ANALYSIS,
    FALLBACK_ELEVATION,
    build_transcript,
    summarize,
)

PLAYER_REPLY = """\
**Viewpoint**: Suspected the keeper's brother from the start.
- Plot contribution: Tied the broken lamp to the missing hour.
Speaking style: Short and pointed.
"""


def _llm(stub_llm):
    return stub_llm({
        "summary_review": "The storm hid a quarrel over the lighthouse deed.",
        "summary_analysis": "The lamp clue broke the alibi.",
        "summary_elevation": "A tight three-round mystery.",
        "summary_player": PLAYER_REPLY,
    })


class TestGating:
    async def test_rejected_before_final_round(self, stub_llm, engine, playing) -> None:
        llm = _llm(stub_llm)
        with pytest.raises(NotFinalRound):
            await summarize(engine, llm, playing.id, "alice")
        assert llm.calls == []

    async def test_rejected_for_outsider(self, stub_llm, engine, final_round) -> None:
        with pytest.raises(NotParticipant):
            await summarize(engine, _llm(stub_llm), final_round.id, "mallory")

    async def test_allowed_after_game_finished(self, stub_llm, engine, final_round) -> None:
        await engine.end_story(final_round.id, "alice")
        await engine.end_story(final_round.id, "bob")
        summary = await summarize(engine, _llm(stub_llm), final_round.id, "bob")
        assert summary.is_complete()


class TestGeneration:
    async def test_sections_and_player_analysis(self, stub_llm, engine, final_round) -> None:
        await engine.append_message(final_round.id, "alice", "The brother lied about the hour.")
        llm = _llm(stub_llm)
        summary = await summarize(engine, llm, final_round.id, "alice")

        assert summary.player_id == "alice"
        assert summary.story_review == "The storm hid a quarrel over the lighthouse deed."
        assert summary.plot_analysis == "The lamp clue broke the alibi."
        assert summary.story_elevation == "A tight three-round mystery."
        assert set(summary.player_analysis) == {"alice", "bob"}

        alice = summary.player_analysis["alice"]
        assert alice.player_name == "Character 1"
        assert alice.viewpoint_summary == "Suspected the keeper's brother from the start."
        assert alice.plot_related_comment == "Tied the broken lamp to the missing hour."
        assert alice.style_comment == "Short and pointed."
        assert llm.stages() == [
            "summary_review", "summary_analysis", "summary_elevation",
            "summary_player", "summary_player",
        ]

    async def test_stored_on_session(self, stub_llm, engine, final_round) -> None:
        summary = await summarize(engine, _llm(stub_llm), final_round.id, "alice")
        stored = engine.get_session(final_round.id).final_summary
        assert stored["alice"] == summary
        assert "bob" not in stored

    async def test_missing_labels_use_defaults(self, stub_llm, engine, final_round) -> None:
        llm = stub_llm({"summary_player": "Viewpoint: Trusted nobody."}, default="Some section.")
        summary = await summarize(engine, llm, final_round.id, "alice")
        bob = summary.player_analysis["bob"]
        assert bob.viewpoint_summary == "Trusted nobody."
        assert bob.plot_related_comment == DEFAULT_ANALYSIS["plot_related_comment"]
        assert bob.style_comment == DEFAULT_ANALYSIS["style_comment"]

    async def test_fallback_text_when_provider_fails(self, failing_llm, engine, final_round) -> None:
        summary = await summarize(engine, failing_llm, final_round.id, "alice")
        assert summary.is_complete()
        assert "3 rounds" in summary.story_review
        assert summary.plot_analysis == FALLBACK_ANALYSIS
        assert summary.story_elevation == FALLBACK_ELEVATION
        for pid, analysis in summary.player_analysis.items():
            assert analysis.player_id == pid
            assert analysis.viewpoint_summary == DEFAULT_ANALYSIS["viewpoint_summary"]


class TestCache:
    async def test_second_call_hits_cache(self, stub_llm, engine, final_round) -> None:
        llm = _llm(stub_llm)
        first = await summarize(engine, llm, final_round.id, "alice")
        calls = len(llm.calls)
        second = await summarize(engine, llm, final_round.id, "alice")
        assert second == first
        assert len(llm.calls) == calls

    async def test_cache_is_per_player(self, stub_llm, engine, final_round) -> None:
        llm = _llm(stub_llm)
        await summarize(engine, llm, final_round.id, "alice")
        calls = len(llm.calls)
        await summarize(engine, llm, final_round.id, "bob")
        assert len(llm.calls) == 2 * calls

    async def test_missing_player_analysis_is_a_cache_miss(self, stub_llm, engine, final_round) -> None:
        llm = _llm(stub_llm)
        first = await summarize(engine, llm, final_round.id, "alice")
        partial = first.model_copy(update={"player_analysis": {"alice": first.player_analysis["alice"]}})
        await engine.store_summary(final_round.id, "alice", partial)
        calls = len(llm.calls)

        again = await summarize(engine, llm, final_round.id, "alice")
        assert len(llm.calls) > calls
        assert set(again.player_analysis) == {"alice", "bob"}

    async def test_force_regenerates(self, stub_llm, engine, final_round) -> None:
        llm = stub_llm({
            "summary_review": ["First take.", "Second take."],
            "summary_analysis": "A.",
            "summary_elevation": "E.",
            "summary_player": PLAYER_REPLY,
        })
        first = await summarize(engine, llm, final_round.id, "alice")
        again = await summarize(engine, llm, final_round.id, "alice", force=True)
        assert first.story_review == "First take."
        assert again.story_review == "Second take."
        assert engine.get_session(final_round.id).final_summary["alice"].story_review == "Second take."


async def test_transcript_lists_rounds_and_speakers(engine, playing):
    await engine.append_message(playing.id, "bob", "I heard the door.")
    await engine.advance_round(playing.id, "alice", 1, 2)
    lines = build_transcript(engine.get_session(playing.id)).splitlines()
    assert lines[0].startswith("Round 1 plot: ")
    assert lines[1] == "Character 2: I heard the door."
    assert lines[2].startswith("Round 2 plot: ")
