from __future__ import annotations

import argparse

from sqlalchemy import select

from app.db.session import SessionLocal
from app.models.webhook_event import WebhookEvent, WebhookSource
from app.services.webhook_events import reprocess_event


def select_events(session, *, source: WebhookSource, include_failed: bool, limit: int):
    stmt = select(WebhookEvent).where(
        WebhookEvent.source == source, WebhookEvent.processed.is_(False)
    )
    if not include_failed:
        stmt = stmt.where(WebhookEvent.error_message.is_(None))
    stmt = stmt.order_by(WebhookEvent.received_at.asc(), WebhookEvent.id.asc()).limit(limit)
    return list(session.scalars(stmt))


def main() -> int:
    parser = argparse.ArgumentParser(description="Re-run processing for stored webhook events.")
    parser.add_argument(
        "--source",
        choices=[source.value for source in WebhookSource],
        default=WebhookSource.heyflow.value,
    )
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument(
        "--include-failed",
        action="store_true",
        help="Also retry events whose last attempt recorded an error.",
    )
    parser.add_argument("--apply", action="store_true", help="Write changes to the database.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview changes without writing (default).",
    )
    args = parser.parse_args()
    apply = args.apply and not args.dry_run

    session = SessionLocal()
    try:
        events = select_events(
            session,
            source=WebhookSource(args.source),
            include_failed=args.include_failed,
            limit=args.limit,
        )
        succeeded = 0
        failed = 0
        if apply:
            for event in events:
                if reprocess_event(session, event):
                    succeeded += 1
                else:
                    failed += 1
        print(f"Webhook reprocess ({args.source})")
        print(f"Candidates: {len(events)}")
        if apply:
            print(f"Processed: succeeded={succeeded} failed={failed}")
        else:
            for event in events:
                print(f"  event {event.id} {event.event_type} attempts={event.attempts}")
            print("Dry run only. Use --apply to persist changes.")
        return 0
    except Exception as exc:
        session.rollback()
        raise exc
    finally:
        session.close()


if __name__ == "__main__":
    raise SystemExit(main())
