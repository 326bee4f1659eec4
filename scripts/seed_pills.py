"""
Seed the system pills (chatbot_id NULL, shared by every chatbot).

The ids are the ones the chunk performance job counts, so re-running this is
safe: existing pills are updated in place.

Usage:
    python scripts/seed_pills.py
"""
import argparse

from app.config import Settings
from app.db.database import create_db_engine, create_session_factory, session_scope
from app.db.models import Pill
from app.logging_config import setup_logging, get_logger

logger = get_logger(__name__)

SYSTEM_PILLS = [
    # Feedback pills
    {"id": "pill_helpful_system", "pill_type": "feedback", "label": "Helpful",
     "prefill_text": "This was helpful", "display_order": 1},
    {"id": "pill_not_helpful_system", "pill_type": "feedback", "label": "Not helpful",
     "prefill_text": "This was not helpful", "display_order": 2},
    # Expansion pills
    {"id": "pill_example_system", "pill_type": "expansion", "label": "Give me an example",
     "prefill_text": "Give me an example", "display_order": 1},
    {"id": "pill_how_to_use_system", "pill_type": "expansion", "label": "How do I use this?",
     "prefill_text": "How do I use this? Break it into steps", "display_order": 2},
    {"id": "pill_say_more_system", "pill_type": "expansion", "label": "What would I say?",
     "prefill_text": "What would I actually say? Give me a script", "display_order": 3},
    {"id": "pill_who_done_system", "pill_type": "expansion", "label": "Who's done this?",
     "prefill_text": "Who's done this? Give me a case study", "display_order": 4},
]


def seed_pills(session_factory) -> int:
    """Upsert SYSTEM_PILLS; returns how many were written."""
    with session_scope(session_factory) as session:
        for pill in SYSTEM_PILLS:
            session.merge(Pill(chatbot_id=None, is_active=True, **pill))
            logger.info(f"Seeded {pill['pill_type']} pill: {pill['label']}")
    return len(SYSTEM_PILLS)


def main():
    parser = argparse.ArgumentParser(description="Seed system pills")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    args = parser.parse_args()

    settings = Settings.from_env()
    if args.database_url:
        settings.database_url = args.database_url
    setup_logging(level=settings.log_level)

    engine = create_db_engine(settings)
    try:
        count = seed_pills(create_session_factory(engine))
    finally:
        engine.dispose()
    print(f"✅ Seeded {count} system pills")


if __name__ == "__main__":
    main()
