"""
AI assist tooling: provider services, models, prompt templates and recorded conversations.

Records are managed here; no completions are executed.
"""
