#!/usr/bin/env python3
"""Database seeding script for CaptureBot.

This script connects to the database, creates all tables, and loads a
small demo dataset: one user with captured items filed into overlapping
containers and a handful of recorded interests, enough for every trend
detector to fire on the next run.
"""

import asyncio
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from capturebot.core.db import AsyncSessionLocal, create_all
from capturebot.core.models import User, Item, Container, ContainerItem
from capturebot.core.repositories import count_user_containers, recount_container_items
from capturebot.core.settings import get_settings
from capturebot.core.time import get_current_utc_time
from capturebot.interests.weights import ExtractedInterest, record_interests

settings = get_settings()

DEMO_USER_EMAIL = "demo@capturebot.local"

DEMO_ITEMS = [
    # (title, domain, days ago, containers, interests)
    ("Building agent orchestration with LangGraph", "ai", 1, ["AI Dev Tools", "AI Tooling"],
     [("topic", "agent orchestration"), ("tool", "LangGraph")]),
    ("Multi-agent patterns in practice", "ai", 2, ["AI Dev Tools", "AI Tooling"],
     [("topic", "agent orchestration")]),
    ("Evaluating coding assistants", "ai", 3, ["AI Dev Tools"],
     [("topic", "coding assistants"), ("tool", "Cursor")]),
    ("Prompt caching explained", "ai", 4, ["AI Dev Tools", "AI Tooling"],
     [("topic", "prompt caching")]),
    ("Procedural level design talk", "gaming", 6, ["Game Design"],
     [("topic", "level design"), ("person", "Mark Brown")]),
    ("Rust async runtime internals", "dev", 40, ["Systems Programming"],
     [("topic", "async runtimes"), ("repo", "tokio-rs/tokio")]),
]


async def seed_demo_user(session) -> User:
    """Create the demo user (weekly report, Monday 07:00 UTC)."""
    user = User(
        display_name="Demo User",
        email=DEMO_USER_EMAIL,
        timezone="UTC",
        report_frequency="weekly",
        report_day=1,
        report_time="07:00",
    )
    session.add(user)
    await session.commit()
    print(f"  ✅ User {user.display_name} ({user.id})")
    return user


async def seed_items(session, user: User) -> int:
    """Create items, containers and memberships; record interests."""
    now = get_current_utc_time()
    containers = {}

    for title, domain, days_ago, container_names, interests in DEMO_ITEMS:
        captured_at = now - timedelta(days=days_ago)
        item = Item(
            user_id=user.id,
            title=title,
            domain=domain,
            content_type="article",
            source_url=f"https://example.com/{title.lower().replace(' ', '-')}",
            captured_at=captured_at,
        )
        session.add(item)
        await session.flush()

        for name in container_names:
            if name not in containers:
                containers[name] = Container(user_id=user.id, name=name)
                session.add(containers[name])
                await session.flush()
            session.add(ContainerItem(container_id=containers[name].id, item_id=item.id))

        await session.commit()
        await record_interests(
            session,
            user.id,
            [ExtractedInterest(t, v) for t, v in interests],
            now=captured_at,
        )
        print(f"  ✅ {title}")

    for container in containers.values():
        await recount_container_items(session, container)
    await session.commit()

    return len(DEMO_ITEMS)


async def main():
    """Main seeding function."""
    print("🌱 Starting CaptureBot database seeding...")
    print(f"📍 Project root: {project_root}")

    try:
        # Create all tables
        print("\n📊 Creating database tables...")
        await create_all()
        print("✅ Database tables ready")

        async with AsyncSessionLocal() as session:
            print("🔌 Connected to database")

            print("\n👤 Creating demo user...")
            user = await seed_demo_user(session)

            print("\n📰 Creating demo items...")
            items_created = await seed_items(session, user)
            container_count = await count_user_containers(session, user.id)

        # Print final summary
        print("\n" + "="*60)
        print("🎉 DATABASE SEEDING COMPLETE!")
        print("="*60)
        print(f"📰 Items created: {items_created}")
        print(f"🗂️  Containers: {container_count}")
        print(f"🔗 Database URL: {settings.db_url.split('@')[1] if '@' in str(settings.db_url) else 'configured'}")
        print("="*60)

        return 0

    except Exception as e:
        print(f"❌ Error during seeding: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
