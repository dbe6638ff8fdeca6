"""Automation rule persistence."""

import logging
from collections.abc import Callable

from credit_pot.src.database import CredentialDatabase
from credit_pot.src.models import AutomationRule
from credit_pot.src.utils import now_ms

logger = logging.getLogger(__name__)


class RuleStore:
    """Create, update, list and delete a user's automation rules."""

    def __init__(self, database: CredentialDatabase, clock: Callable[[], int] = now_ms) -> None:
        """Initialize the store and make sure the schema exists."""
        self.database = database
        self.clock = clock
        database.setup()

    def for_user(self, user_id: str) -> list[AutomationRule]:
        """All rules for a user, oldest first."""
        with self.database.connect() as conn:
            rows = conn.execute(
                "SELECT rule FROM automation_rules WHERE user_id = ? ORDER BY created_at, id",
                (user_id,),
            ).fetchall()
        return [AutomationRule.model_validate_json(row[0]) for row in rows]

    def active(self, user_id: str) -> list[AutomationRule]:
        """Active rules for a user, oldest first."""
        return [rule for rule in self.for_user(user_id) if rule.is_active]

    def save(self, rule: AutomationRule) -> AutomationRule:
        """Insert a new rule or replace an existing one with the same id."""
        now = self.clock()
        with self.database.connect() as conn:
            row = conn.execute(
                "SELECT created_at FROM automation_rules WHERE id = ? AND user_id = ?",
                (rule.id, rule.user_id),
            ).fetchone()
            created_at = row[0] if row else (rule.created_at or now)
            rule = rule.model_copy(update={"created_at": created_at, "updated_at": now})
            if row:
                conn.execute(
                    "UPDATE automation_rules SET is_active = ?, rule = ?, updated_at = ? WHERE id = ?",
                    (rule.is_active, rule.model_dump_json(), now, rule.id),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO automation_rules (id, user_id, is_active, rule, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (rule.id, rule.user_id, rule.is_active, rule.model_dump_json(), created_at, now),
                )
        logger.info(f"Saved automation rule {rule.id} for user {rule.user_id}")
        return rule

    def delete(self, user_id: str, rule_id: str) -> bool:
        """Delete a rule. Returns False if it did not exist."""
        with self.database.connect() as conn:
            rows = conn.execute(
                "DELETE FROM automation_rules WHERE id = ? AND user_id = ? RETURNING id",
                (rule_id, user_id),
            ).fetchall()
        return bool(rows)
