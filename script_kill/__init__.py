"""Script kill: AI-assisted murder-mystery game engine."""
