"""Handlebars prompt rendering for every provider stage.

Templates use triple-stash `{{{var}}}` so narrative text reaches the model
unescaped. Compiled templates are cached by source string.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pybars

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} - iterate over the last N items."""
    result = []
    for item in list(items)[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context."""
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Script synthesis ─────────────────────────────────────

SCRIPT_PROMPT = """You are a professional author of murder-mystery party scripts. Write a complete script for the following brief.

Plot requirement: {{{plot_requirement}}}
Rounds: {{{rounds}}}
Human players: {{{human_count}}} (they get the main characters)
AI NPCs: {{{ai_count}}} (they get supporting characters)
Total characters: {{{total}}}

The script must contain:
1. A gripping story background (300-400 characters).
2. {{{total}}} characters with name, identity and personality.
   - The first {{{human_count}}} characters are main characters (isMainCharacter true).
   - The remaining {{{ai_count}}} are supporting characters (isMainCharacter false).
3. The plot of every round, roughly 1000 characters each (aim for 900-1100): key developments, the core conflict, and the setting, people and foreshadowing it needs. Keep it dense and well paced.
4. A private clue for every character in every round (50-80 characters each, distinct but related).

Output strict JSON only:
{
  "title": "Script title",
  "background": "Story background",
  "characters": [
    {"id": "character1", "name": "Name", "identity": "Identity or occupation", "personality": "Personality", "isMainCharacter": true}
  ],
  "roundContents": [
    {"round": 1, "plot": "Round 1 plot", "privateClues": {"character1": "Clue for character 1"} }
  ]
}
"""

SKELETON_PROMPT = """Output JSON only, with no other text:
{
  "title": "Title",
  "background": "250-300 character background",
  "characters": [{"id": "char_1", "name": "Name", "identity": "Identity", "personality": "Personality", "isMainCharacter": true}]
}
Requirements: exactly {{{total}}} characters; the first {{{human_count}}} are main characters (isMainCharacter true), the last {{{ai_count}}} are supporting characters.
Plot requirement: {{{plot_requirement}}}
"""

ROUND_PROMPT = """Output JSON for this round only:
{
  "round": {{{round}}},
  "plot": "Round {{{round}}} plot, about 1000 characters (900-1100): events, inner states, one or two conflicts or pieces of foreshadowing, told coherently",
  "privateClues": {"<character id>": "50-80 character clue for that character"}
}
Character ids: {{{character_ids}}}
Story so far: {{{background}}}
Plot requirement: {{{plot_requirement}}}
"""

PERSONAL_SCRIPT_PROMPT = """You are a professional murder-mystery writer. Create the personal version of the script for one character.

Script title: {{{title}}}
Shared background: {{{background}}}
Rounds: {{{rounds}}}

Character:
- id: {{{character.id}}}
- name: {{{character.name}}}
- identity: {{{character.identity}}}
- personality: {{{character.personality}}}
- main character: {{#if is_main}}yes{{else}}no{{/if}}

Cast: {{#each cast}}{{{name}}} ({{{identity}}}); {{/each}}

Write:
1. The background retold from this character's point of view (150-200 characters), with their motives and secrets.
2. For every round, the plot from this character's point of view (400-500 characters) with their own observations and feelings, plus one piece of information only they know.

Shared round plots:
{{#each round_contents}}Round {{{round}}}: {{{plot}}}
{{/each}}
Output JSON only:
{
  "personalBackground": "Background from this character's point of view",
  "personalRoundContents": [
    {"round": 1, "personalPlot": "Round 1 from this character's point of view", "hiddenInfo": "What only this character knows"}
  ]
}
Main characters receive more key information; supporting characters receive helpful side views. Stay consistent with the shared plot.
"""

STRICT_JSON_PREFIX = "Output strict JSON only, no explanations.\n"
STRICT_JSON_SUFFIX = "\n(Reminder: output JSON only.)"


# ── NPC speech ───────────────────────────────────────────

NPC_DECISION_PROMPT = """You are playing an AI character in a murder-mystery game and must decide whether to speak in the current discussion.

Your character:
- name: {{{npc.name}}}
- style: {{{npc.style}}}
- personality: {{{npc.personality}}}
{{#if friend_style}}- You imitate the everyday speaking style of a friend (tone, phrasing, sentence shape), but stay on the plot.
{{/if}}
Story background: {{{background}}}

Current round: {{{round}}}
Current plot: {{{plot}}}
Your private clue: {{{clue}}}

Recent discussion (oldest first, the last line is the newest):
{{#last messages 10}}{{{sender_name}}}: {{{content}}}
{{/last}}
{{#if newest}}Newest message => {{{newest.sender_name}}}: {{{newest.content}}}
{{/if}}
Decide:
1. Whether to speak (weigh replying to the newest message, how lively the discussion is, whether you have something new, and your personality).
2. If you speak, what to say: first person ("I"), in character, replying directly to the newest message and moving the discussion on, 1-2 sentences, at most {{{max_chars}}} characters, never narrating yourself in the third person.

Output JSON only:
{"shouldSpeak": true, "content": "what you say (only when shouldSpeak is true)"}

Notes:
- Prefer replying to the newest message.
- Do not speak every time; speak about 30-50% of the time.
- Add value or move the plot on; do not repeat what others said.
- If the newest message mentions you or asks a question, lean towards answering.
"""

NPC_REPLY_PROMPT = """You are an AI character called "{{{npc.name}}}" in a murder-mystery game. Your personality: {{{npc.personality}}}.

Game background:
{{{background}}}

This is round {{{round}}}. A player just said: "{{{user_message}}}"

Recent chat:
{{#last messages 10}}{{{sender_name}}}: {{{content}}}
{{/last}}
Reply in 1-2 short sentences that fit your personality. Rules:
1. First person ("I") only; no narration, no third person about yourself.
2. Stay on the plot and answer what the player just said.
3. Casual spoken style, at most {{{max_chars}}} characters.
4. Never reveal that you are an AI or repeat system information.

Output the spoken text only (no JSON, no quotes):"""

ROUND_ADVICE_PROMPT = """Analyse the discussion of this murder-mystery game and judge whether it should move to the next round.

Round: {{{round}}}/{{{rounds}}}
Plot: {{{plot}}}

Recent discussion:
{{#last messages 15}}{{{sender_name}}}: {{{content}}}
{{/last}}
Consider whether the discussion is exhausted, whether key questions are open, whether it is cooling down, and whether anyone wants to keep talking.

Output JSON only:
{"shouldAdvance": false, "reason": "why"}
"""


# ── Summary ──────────────────────────────────────────────

SUMMARY_REVIEW_PROMPT = """You are the recorder of a murder-mystery game. From the background and the full log below, write an objective recap of the story for all players.

Background: {{{background}}}
Rounds: {{{rounds}}}

Full game log:
{{{transcript}}}

Rules:
- No first person and no emotive language; walk the timeline: main events, key clues, turning points, ending.
- Concise and dense.
- 200-300 characters.

Output plain text only (no JSON, no title).
"""

SUMMARY_ANALYSIS_PROMPT = """Based on this game log, explain the key reasoning and mechanics:
1) which statements or clues confirmed or refuted a theory (quote or paraphrase);
2) how the chain of reasoning led from clues to conclusions;
3) possible ambiguities and alternative paths.

Background: {{{background}}}

Game log:
{{{transcript}}}

Objective and neutral, 150-220 characters, plain text only.
"""

SUMMARY_ELEVATION_PROMPT = """Write a rational close-out of this game:
- In 3-4 sentences, summarise its structure, how clues were distributed and the pace of discussion.
- Name lessons reusable in a similar game (pace of disclosure, handling cooperation and disagreement).

Background: {{{background}}}

Game log:
{{{transcript}}}

100-160 characters, neutral and professional, plain text only.
"""

SUMMARY_PLAYER_PROMPT = """Give a rational critique of the player "{{{player_name}}}" based on what they actually said.

Everything this player said, in order:
{{#each messages}}{{{sender_name}}}: {{{content}}}
{{/each}}
Answer in three points:
1. Viewpoint: the player's core claims or suspects and their basis.
2. Plot contribution: one or two concrete contributions to the investigation, linking clues or refuting theories.
3. Speaking style: how they express themselves and cooperate (neutral description).

40-70 characters per point, using exactly this format:
Viewpoint: ...
Plot contribution: ...
Speaking style: ...
"""
