"""Seed a PromptParty room and play it out offline.

Usage:
    python scripts/demo_game.py seed [PLAYERS]   # Create a room with bot players (default 3)
    python scripts/demo_game.py play             # Play every round with placeholder images
    python scripts/demo_game.py status           # Print rooms, rounds, and scores

Uses a local SQLite database (demo_promptparty.db). Timers are fired in
order immediately instead of waiting for each phase deadline.
"""

from __future__ import annotations

import asyncio
import os
import random
import sys

from promptparty.ai.providers import PlaceholderImageProvider
from promptparty.config import Settings
from promptparty.core.actions import make_runner
from promptparty.core.context import GameContext
from promptparty.core.errors import GameRuleError
from promptparty.core.phases import start_game
from promptparty.core.submissions import submit_prompt, submit_vote
from promptparty.core.timers import ManualTimers
from promptparty.db.engine import create_engine, create_tables, get_session
from promptparty.db.repository import Repository

DEMO_DB = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///demo_promptparty.db")

BOT_NAMES = ["Pixel Pete", "Doodle Dana", "Sketchy Sam", "Brushy Bea", "Crayon Cal"]

BOT_ANSWERS = [
    "a disco ball wearing sunglasses",
    "three raccoons in a trench coat",
    "a melting clock made of cheese",
    "a very confused octopus",
    "a castle built from pancakes",
    "a robot learning to knit",
]


async def seed(players: int = 3) -> None:
    engine = create_engine(DEMO_DB)
    await create_tables(engine)
    async with get_session(engine) as session:
        repo = Repository(session)
        room = await repo.create_room("Demo Room", rounds_per_game=2)
        for i, name in enumerate(BOT_NAMES[:players]):
            await repo.add_player(room.id, name, is_host=i == 0)
        print(f"Room seeded: {room.name} (code {room.code}) with {players} players")
        print(f"Room ID: {room.id}")
    await engine.dispose()


async def play() -> None:
    engine = create_engine(DEMO_DB)
    settings = Settings(database_url=DEMO_DB, generation_provider="mock")
    timers = ManualTimers()
    game = GameContext(
        engine=engine,
        settings=settings,
        timers=timers,
        provider=PlaceholderImageProvider(),
    )
    runner = make_runner(game)

    async with get_session(engine) as session:
        repo = Repository(session)
        rooms = await repo.get_rooms_by_status("waiting")
        if not rooms:
            print("No waiting room found. Run 'seed' first.")
            await engine.dispose()
            return
        room = rooms[0]
        players = await repo.get_players_for_room(room.id)
    host = next(p for p in players if p.is_host)

    round_row = await start_game(game, room.id, host.id)
    print(f"Game started in {room.name}")
    answered: set[str] = set()

    while (item := timers.pop()) is not None:
        if item.action == "start_next_round":
            await runner(item.action, item.payload)
            async with get_session(engine) as session:
                round_row = await Repository(session).get_current_round(room.id) or round_row
            continue

        if round_row.id not in answered:
            answered.add(round_row.id)
            print(f"\nRound {round_row.round_number}: {round_row.question_text}")
            for player in players:
                await submit_prompt(game, round_row.id, player.id, random.choice(BOT_ANSWERS))

        await runner(item.action, item.payload)

        if item.action == "advance_phase" and item.payload.get("expected_status") == "generating":
            await _cast_bot_votes(game, engine, round_row.id, players)

    async with get_session(engine) as session:
        scoreboard = await Repository(session).get_scoreboard(room.id)
    print("\nFinal scores:")
    for p in scoreboard:
        print(f"  {p.name:<15} {p.score:>5}")
    await engine.dispose()


async def _cast_bot_votes(game, engine, round_id: str, players) -> None:
    async with get_session(engine) as session:
        images = [
            (image.id, image.prompt.player_id)
            for image in await Repository(session).list_images_for_round(round_id)
            if image.image_url
        ]
    for player in players:
        choices = [image_id for image_id, owner in images if owner != player.id]
        if not choices:
            continue
        try:
            await submit_vote(game, round_id, player.id, random.choice(choices))
        except GameRuleError as exc:
            print(f"  {player.name} could not vote: {exc}")
    print(f"  {len(images)} images, votes cast")


async def status() -> None:
    engine = create_engine(DEMO_DB)
    async with get_session(engine) as session:
        repo = Repository(session)
        for room_status in ("waiting", "playing", "finished"):
            for room in await repo.get_rooms_by_status(room_status):
                print(f"{room.name} [{room.status}] code={room.code}")
                for r in await repo.get_rounds_for_room(room.id):
                    print(f"  Round {r.round_number} [{r.status}] {r.question_text}")
                for p in await repo.get_scoreboard(room.id):
                    print(f"    {p.name:<15} {p.score:>5}")
    await engine.dispose()


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        return

    cmd = sys.argv[1]
    if cmd == "seed":
        n = int(sys.argv[2]) if len(sys.argv) > 2 else 3
        asyncio.run(seed(n))
    elif cmd == "play":
        asyncio.run(play())
    elif cmd == "status":
        asyncio.run(status())
    else:
        print(f"Unknown command: {cmd}")
        print(__doc__)


if __name__ == "__main__":
    main()
