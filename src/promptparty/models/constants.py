"""Shared constants for PromptParty models."""

from __future__ import annotations

# Built-in deck used when the question_cards table has no active cards.
DEFAULT_QUESTION_CARDS: list[str] = [
    "The worst possible mascot for a dentist's office:",
    "What the cat is really thinking about at 3am:",
    "A rejected design for the next national flag:",
    "The secret ingredient in grandma's famous soup:",
    "What aliens would put on a postcard from Earth:",
    "The most disappointing superhero ever created:",
    "A theme park ride that should never have been built:",
    "What your houseplant does when you leave for work:",
    "The cover of a self-help book written by a goose:",
    "An unexpected thing to find at the bottom of the ocean:",
]
