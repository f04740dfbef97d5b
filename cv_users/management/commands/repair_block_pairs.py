# cv_users/management/commands/repair_block_pairs.py

from django.conf import settings
from django.core.management.base import BaseCommand
from google.cloud import firestore as _fs

from cv_core.firebase_admin_client import get_db


def find_missing_halves(users: dict) -> list:
    """
    Given {uid: user_doc_dict}, list (uid, field, value) additions needed so
    every blockedUsers entry has its blockedBy mirror and vice versa.
    """
    missing = set()
    for uid, data in users.items():
        data = data or {}
        for blocked in data.get("blockedUsers") or []:
            peer = users.get(blocked)
            if peer is not None and uid not in (peer.get("blockedBy") or []):
                missing.add((blocked, "blockedBy", uid))
        for blocker in data.get("blockedBy") or []:
            peer = users.get(blocker)
            if peer is not None and uid not in (peer.get("blockedUsers") or []):
                missing.add((blocker, "blockedUsers", uid))
    return sorted(missing)


class Command(BaseCommand):
    # tests hand in a Firestore client through call_command(db=...)
    stealth_options = ("db",)
    help = (
        "Repair asymmetric block pairs: every users/A.blockedUsers entry B gets A in "
        "users/B.blockedBy and vice versa. Only ever adds the missing half."
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

    def handle(self, *args, **opts):
        db = opts.get("db") or get_db()
        batch_size = opts["batch_size"]
        dry = opts["dry_run"]

        users = {snap.id: snap.to_dict() or {} for snap in db.collection("users").stream()}
        fixes = find_missing_halves(users)
        self.stdout.write(self.style.NOTICE(f"Found {len(fixes)} missing half-pair(s) across {len(users)} user(s)."))

        batch = db.batch()
        pending = 0
        for uid, field, value in fixes:
            self.stdout.write(f"- users/{uid}.{field} += {value}")
            if dry:
                continue
            batch.update(db.collection("users").document(uid), {field: _fs.ArrayUnion([value])})
            pending += 1
            if pending >= batch_size:
                batch.commit()
                self.stdout.write(self.style.SUCCESS(f"Committed {pending} updates"))
                batch = db.batch()
                pending = 0

        if not dry and pending:
            batch.commit()
            self.stdout.write(self.style.SUCCESS(f"Committed {pending} updates"))

        msg = f"Done. {'(dry-run) ' if dry else ''}{len(fixes)} half-pair(s) {'would be' if dry else 'were'} repaired."
        self.stdout.write(self.style.SUCCESS(msg))
