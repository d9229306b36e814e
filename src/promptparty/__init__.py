"""PromptParty: a party game where prompts become images and players vote.

The round orchestrator lives in ``promptparty.core``; the HTTP surface in
``promptparty.api`` and ``promptparty.main``.
"""
