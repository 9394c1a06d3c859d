#!/usr/bin/env python3
"""
TaskWise — Sample Data Generator
Generates a realistic board aligned with the current database models:
departments, users in every role and account state, and tasks whose
per-status `order` values are contiguous, with matching status history.

Usage:
    python scripts/generate-sample-data.py
    python scripts/generate-sample-data.py --users 40 --tasks 12 --output sample-data.json
"""

import json
import random
import uuid
import argparse
from datetime import datetime, timedelta, timezone
from typing import Any


# ── Configuration ───────────────────────────────────────────

DEPARTMENTS = [
    ("Engineering", "#3b82f6"),
    ("Marketing", "#22c55e"),
    ("Finance", "#f59e0b"),
    ("Operations", "#a855f7"),
    ("Support", "#ef4444"),
]

STATUSES = ["In Progress", "To Be Reviewed", "Deprecated", "Done", "Archived"]
STATUS_WEIGHTS = [4, 2, 1, 2, 2]
ARCHIVE_HOURS = 48

TASK_VERBS = ["Draft", "Review", "Migrate", "Publish", "Reconcile", "Audit", "Plan", "Refactor", "Onboard", "Triage"]
TASK_OBJECTS = ["Q3 budget", "landing page", "billing service", "release notes", "vendor contracts",
                "support macros", "hiring pipeline", "on-call rota", "analytics dashboard", "style guide"]

FIRST_NAMES = ["Alex", "Jordan", "Taylor", "Morgan", "Casey", "Riley", "Quinn", "Avery", "Sage", "River",
               "Kai", "Rowan", "Phoenix", "Skyler", "Dakota", "Reese", "Finley", "Harper", "Emery", "Blake"]
LAST_NAMES = ["Chen", "Patel", "Kim", "Santos", "Müller", "Okafor", "Tanaka", "Johansson", "Silva", "Kowalski",
              "Nguyen", "Andersen", "Dubois", "Rossi", "Yamamoto", "Petrov", "Larsson", "Fernandez", "Ali", "Park"]
DOMAIN = "taskwise.dev"


class SampleDataGenerator:
    """Generates sample departments, users and tasks for TaskWise."""

    def __init__(self, seed: int = 42):
        random.seed(seed)
        self.seed = seed
        self.now = datetime.now(timezone.utc)

    def _uuid(self) -> str:
        return str(uuid.uuid4())

    def _past(self, max_hours: int) -> datetime:
        return self.now - timedelta(hours=random.randint(1, max_hours), minutes=random.randint(0, 59))

    # ── Generators ──────────────────────────────────────────

    def generate_department(self, name: str, color: str) -> dict:
        return {"id": self._uuid(), "name": name, "depcolor": color}

    def generate_user(self, index: int, role: str, department: str | None, status: str = "approved") -> dict:
        first = random.choice(FIRST_NAMES)
        last = random.choice(LAST_NAMES)
        return {
            "id": self._uuid(),
            "email": f"{first.lower()}.{last.lower()}{index}@{DOMAIN}",
            "display_name": f"{first} {last}",
            "role": role,
            "status": status,
            "department": department,
            "created_at": self._past(24 * 180).isoformat(),
        }

    def _history(self, owner_id: str, reviewer_id: str, status: str, created: datetime,
                 done_at: datetime | None) -> list[dict]:
        """Status trail from creation to `status`, one entry per transition."""
        entries = [(None, "In Progress", owner_id, created)]
        when = created + timedelta(hours=random.randint(1, 12))
        if status in ("To Be Reviewed", "Done", "Archived"):
            entries.append(("In Progress", "To Be Reviewed", owner_id, when))
        if status in ("Done", "Archived"):
            entries.append(("To Be Reviewed", "Done", reviewer_id, done_at))
        if status == "Archived":
            entries.append(("Done", "Archived", "system", done_at + timedelta(hours=ARCHIVE_HOURS + random.randint(1, 6))))
        if status == "Deprecated":
            entries.append(("In Progress", "Deprecated", reviewer_id, when))
        return [
            {
                "sequence": n,
                "field": "status",
                "old_value": old,
                "new_value": new,
                "changed_by": actor,
                "timestamp": ts.isoformat(),
            }
            for n, (old, new, actor, ts) in enumerate(entries)
        ]

    def generate_task(self, owner: dict, reviewer: dict, status: str, order: int) -> dict:
        created = self._past(24 * 30)
        done_at = None
        if status == "Done":
            # Mix of fresh and overdue-for-archival completions
            done_at = self._past(ARCHIVE_HOURS * 2)
        elif status == "Archived":
            done_at = self._past(24 * 20)
        history = self._history(owner["id"], reviewer["id"], status, created, done_at)
        return {
            "id": self._uuid(),
            "name": f"{random.choice(TASK_VERBS)} {random.choice(TASK_OBJECTS)}",
            "department": owner["department"],
            "comments": f"<p>{random.choice(['Blocked on legal.', 'Needs a second pair of eyes.', 'Almost there.', ''])}</p>",
            "status": status,
            "user_id": owner["id"],
            "order": order,
            # Archived tasks no longer carry a completion time
            "done_at": done_at.isoformat() if status == "Done" else None,
            "is_reviewed": status == "In Progress" and random.random() > 0.7,
            "created_at": created.isoformat(),
            "history": history,
        }

    # ── Main Generator ──────────────────────────────────────

    def generate_all(self, counts: dict[str, int] | None = None) -> dict[str, Any]:
        c = counts or {"users": 25, "tasks_per_user": 8, "pending": 3}

        departments = [self.generate_department(name, color) for name, color in DEPARTMENTS]
        names = [d["name"] for d in departments]

        users = [self.generate_user(0, "sysadmin", None)]
        admins = {}
        for i, name in enumerate(names, start=1):
            admins[name] = self.generate_user(i, "depadmin", name)
            users.append(admins[name])
        members = [
            self.generate_user(i, "user", random.choice(names))
            for i in range(len(users), len(users) + c["users"])
        ]
        users += members
        users += [
            self.generate_user(len(users) + i, "user", None, status="pending")
            for i in range(c.get("pending", 0))
        ]

        tasks = []
        for owner in members + list(admins.values()):
            reviewer = admins[owner["department"]]
            statuses = random.choices(STATUSES, weights=STATUS_WEIGHTS, k=c["tasks_per_user"])
            for status in STATUSES:
                # Rank per owner and status keeps each owner's columns contiguous
                for order in range(statuses.count(status)):
                    tasks.append(self.generate_task(owner, reviewer, status, order))

        return {
            "generated_at": self.now.isoformat(),
            "generator": "TaskWise Sample Data Generator v1.0",
            "seed": self.seed,
            "counts": {
                "departments": len(departments),
                "users": len(users),
                "tasks": len(tasks),
                "history_entries": sum(len(t["history"]) for t in tasks),
            },
            "data": {
                "departments": departments,
                "users": users,
                "tasks": tasks,
            },
        }


# ── CLI ─────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(description="TaskWise Sample Data Generator")
    parser.add_argument("--users", type=int, default=25, help="Number of regular users")
    parser.add_argument("--tasks", type=int, default=8, help="Tasks per user")
    parser.add_argument("--pending", type=int, default=3, help="Accounts awaiting approval")
    parser.add_argument("--output", type=str, default="sample-data.json", help="Output file")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--pretty", action="store_true", default=True, help="Pretty print JSON")
    args = parser.parse_args()

    generator = SampleDataGenerator(seed=args.seed)
    data = generator.generate_all({
        "users": args.users,
        "tasks_per_user": args.tasks,
        "pending": args.pending,
    })

    with open(args.output, "w") as f:
        json.dump(data, f, indent=2 if args.pretty else None, default=str)

    counts = data["counts"]
    print(f"✅ Sample data generated: {args.output}")
    print(f"   Departments: {counts['departments']}")
    print(f"   Users: {counts['users']}")
    print(f"   Tasks: {counts['tasks']}")
    print(f"   History entries: {counts['history_entries']}")


if __name__ == "__main__":
    main()
