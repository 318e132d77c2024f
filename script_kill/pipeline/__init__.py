"""Game pipeline.

From a host's brief to an end-of-game summary:
  1. Script synthesis   - one-shot prompt, then incremental, then placeholders.
  2. Personal scripts   - one private view per character, same fallback idea.
  3. Session engine     - ready-up, round advances, chat, end of story.
  4. NPC speech policy  - per chat message, each active NPC may answer.
  5. Summary            - recap, analysis, close-out and per-player critique.

Provider stages (names passed to the LLM callable):
  script, script_skeleton, script_round        - script_writer
  personal_script, personal_script_retry        - personal
  npc_decision, npc_reply, round_advice         - npc
  summary_review, summary_analysis,
  summary_elevation, summary_player             - summary
"""

from .director import start_game  # noqa: F401
from .npc import NPCSpeechPolicy, RoundAdvice, SpeechDecision, advise_round_advance  # noqa: F401
from .personal import synthesize_all_personal_scripts, synthesize_personal_script  # noqa: F401
from .script_writer import synthesize_script  # noqa: F401
from .session import EndResult, SessionEngine  # noqa: F401
from .summary import summarize  # noqa: F401
