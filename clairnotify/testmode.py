"""Stand-in indexer and matcher that make the notifier produce test notifications."""

from __future__ import annotations

import os
import threading
from datetime import datetime, timezone
from uuid import UUID, uuid4

from .models import (
    AffectedManifests,
    Digest,
    Severity,
    UpdateDiff,
    UpdateOperation,
    Vulnerability,
)
from .store import NotifierError

TEST_UPDATER = "test-updater"
TEST_FINGERPRINT = "test-fingerprint"


class StubIndexer:
    """Reports a random manifest as affected by the first vulnerability asked about."""

    def affected_manifests(self, vulnerabilities: list[Vulnerability]) -> AffectedManifests:
        if not vulnerabilities:
            return AffectedManifests()
        vuln = vulnerabilities[0]
        digest = Digest("sha256", os.urandom(32))
        return AffectedManifests(
            vulnerabilities={vuln.id: vuln},
            vulnerable_manifests={str(digest): [vuln.id]},
        )


class StubMatcher:
    """Invents a new pair of update operations on every poll.

    ``latest_update_operations`` smiths a fresh (latest, older) pair for the
    test updater, ``update_operations`` returns that pair, and ``update_diff``
    reports one added vulnerability between them.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.test_uos: dict[str, list[UpdateOperation]] = {}

    def latest_update_operations(self, kind: str) -> dict[str, list[UpdateOperation]]:
        latest = UpdateOperation(
            ref=uuid4(), updater=TEST_UPDATER, fingerprint=TEST_FINGERPRINT
        )
        older = UpdateOperation(
            ref=uuid4(), updater=TEST_UPDATER, fingerprint=TEST_FINGERPRINT
        )
        with self._lock:
            self.test_uos = {TEST_UPDATER: [latest, older]}
        return {latest.updater: [latest]}

    def update_operations(self, kind: str, *args: str) -> dict[str, list[UpdateOperation]]:
        with self._lock:
            return {updater: list(ops) for updater, ops in self.test_uos.items()}

    def update_diff(self, prev: UUID, cur: UUID) -> UpdateDiff:
        vuln = Vulnerability(
            id="0",
            updater=TEST_UPDATER,
            name="test-vulnerability",
            description=(
                "this vulnerability indicates you are running the notifier in test mode."
            ),
            issued=datetime.now(timezone.utc),
            normalized_severity=Severity.UNKNOWN,
            fixed_in_version="",
        )
        with self._lock:
            ops = self.test_uos.get(TEST_UPDATER)
            if not ops or len(ops) < 2:
                raise NotifierError("no test update operations have been created yet")
            return UpdateDiff(cur=ops[0], prev=ops[1], added=[vuln])