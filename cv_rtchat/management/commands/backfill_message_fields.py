# cv_rtchat/management/commands/backfill_message_fields.py

from django.conf import settings
from django.core.management.base import BaseCommand

from cv_core.firebase_admin_client import get_db

# field -> value written when the message document lacks it
MESSAGE_DEFAULTS = (
    ("deleted", False),
    ("deletedFor", []),
    ("type", "text"),
)


def build_missing_fields(data: dict) -> dict:
    """
    Updates for a message doc missing any of the fields the sync engine reads.
    Never overwrites existing values. A missing readBy gets the sender, which
    is what a fresh send writes.
    """
    data = data or {}
    updates = {}
    for key, default in MESSAGE_DEFAULTS:
        if key not in data:
            updates[key] = default
    if "readBy" not in data:
        sender = data.get("senderId")
        updates["readBy"] = [sender] if sender else []
    return updates


class Command(BaseCommand):
    # tests hand in a Firestore client through call_command(db=...)
    stealth_options = ("db",)
    help = (
        "Backfill chats/*/messages so every message has deleted, deletedFor, readBy "
        "and type. Idempotent and does not overwrite existing values."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--batch-size",
            type=int,
            default=settings.CONVERSA_BATCH_SIZE,
            help="Number of updates per commit (Firestore limit is 500).",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Print what would change, but do not write.",
        )
        parser.add_argument(
            "--chat",
            default="",
            help="Only process this chat id.",
        )

    def handle(self, *args, **opts):
        db = opts.get("db") or get_db()
        batch_size = opts["batch_size"]
        dry = opts["dry_run"]

        chats = db.collection("chats")
        if opts["chat"]:
            chat_snaps = [chats.document(opts["chat"]).get()]
        else:
            chat_snaps = list(chats.stream())
        self.stdout.write(self.style.NOTICE(f"Scanning {len(chat_snaps)} chat(s)."))

        batch = db.batch()
        pending = 0
        updated = 0

        for chat in chat_snaps:
            for msg in chats.document(chat.id).collection("messages").stream():
                updates = build_missing_fields(msg.to_dict())
                if not updates:
                    continue
                updated += 1
                self.stdout.write(f"- {chat.id}/{msg.id}: {', '.join(sorted(updates))}")
                if dry:
                    continue

                batch.update(msg.reference, updates)
                pending += 1
                if pending >= batch_size:
                    batch.commit()
                    self.stdout.write(self.style.SUCCESS(f"Committed {pending} updates"))
                    batch = db.batch()
                    pending = 0

        if not dry and pending:
            batch.commit()
            self.stdout.write(self.style.SUCCESS(f"Committed {pending} updates"))

        msg = f"Done. {'(dry-run) ' if dry else ''}{updated} message(s) {'would be' if dry else 'were'} updated."
        self.stdout.write(self.style.SUCCESS(msg))
