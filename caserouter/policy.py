"""
Transfer capability policy: which roles may start, receive and supervise transfers.
"""
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from caserouter.config import POLICY_FILE
from caserouter.db.models import ROLE_AGENT, ROLE_QA, ROLE_TL, ROLE_ADMIN

logger = logging.getLogger(__name__)

DEFAULT_INITIATORS = frozenset({ROLE_AGENT, ROLE_QA, ROLE_TL})
DEFAULT_RECIPIENTS = frozenset({ROLE_AGENT, ROLE_QA, ROLE_TL})
DEFAULT_SUPERVISORS = frozenset({ROLE_QA, ROLE_TL, ROLE_ADMIN})


@dataclass(frozen=True)
class TransferPolicy:
    initiators: frozenset = DEFAULT_INITIATORS
    recipients: frozenset = DEFAULT_RECIPIENTS
    supervisors: frozenset = DEFAULT_SUPERVISORS

    @staticmethod
    def load(path: Path) -> "TransferPolicy":
        with path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        return TransferPolicy(
            initiators=frozenset(raw.get("initiators", DEFAULT_INITIATORS)),
            recipients=frozenset(raw.get("recipients", DEFAULT_RECIPIENTS)),
            supervisors=frozenset(raw.get("supervisors", DEFAULT_SUPERVISORS)),
        )

    def can_initiate(self, role: str) -> bool:
        return role in self.initiators

    def can_receive(self, role: str) -> bool:
        return role in self.recipients

    def can_supervise(self, role: str) -> bool:
        """Supervisors may view any escalation chain and re-route a rejected transfer."""
        return role in self.supervisors

    def as_dict(self) -> dict:
        return {
            "initiators": sorted(self.initiators),
            "recipients": sorted(self.recipients),
            "supervisors": sorted(self.supervisors),
        }


_policy: Optional[TransferPolicy] = None


def get_policy() -> TransferPolicy:
    global _policy
    if _policy is None:
        if POLICY_FILE and Path(POLICY_FILE).exists():
            _policy = TransferPolicy.load(Path(POLICY_FILE))
            logger.info(f"Transfer policy loaded from {POLICY_FILE}: {_policy.as_dict()}")
        else:
            _policy = TransferPolicy()
    return _policy


def set_policy(policy: Optional[TransferPolicy]) -> None:
    """Replace the active policy (None restores lazy loading)."""
    global _policy
    _policy = policy
