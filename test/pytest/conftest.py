from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Tuple

import pytest

from app.database.assignment_repo import AssignmentFilter, AssignmentRepo
from app.database.roster_repo import RosterRepo
from app.database.stats_repo import StatsRepo
from app.schemas.assignment import Assignment, Attachment
from app.schemas.context import UserContext
from app.schemas.stats import TeacherStats
from app.services.admin_override import AdminOverrideEngine
from app.services.assignment_service import AssignmentService
from app.services.file_store import FileStore
from app.services.publisher_service import NotificationDispatcher
from app.services.response_ledger import ResponseLedger
from app.services.schedule_publisher import SchedulePublisher
from app.services.stats_aggregator import StatsAggregator

DUE = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
CLOSE = DUE + timedelta(days=3)


# ------------------------- Fakes -------------------------
class FixedClock:
    def __init__(self, now: datetime):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def set(self, now: datetime) -> None:
        self.current = now

    def advance(self, delta: timedelta) -> None:
        self.current += delta


class FakeAssignmentRepo(AssignmentRepo):
    """In-memory store; returns copies so callers never edit stored state in place."""

    def __init__(self):
        self.items: dict[str, Assignment] = {}
        self.conflicts_to_inject = 0
        self.claims_lost: set[str] = set()

    def put(self, assignment: Assignment) -> Assignment:
        self.items[assignment.assignmentId] = assignment.model_copy(deep=True)
        return assignment

    def stored(self, assignment_id: str) -> Assignment:
        return self.items[assignment_id]

    async def create(self, assignment: Assignment) -> str:
        self.put(assignment)
        return assignment.assignmentId

    async def find_one(self, assignment_id: str) -> Optional[Assignment]:
        a = self.items.get(assignment_id)
        return a.model_copy(deep=True) if a else None

    async def find_for_recipient(self, recipient_id, statuses=None):
        return [
            a.model_copy(deep=True)
            for a in self.items.values()
            if recipient_id in a.assignedTo and (not statuses or a.status in statuses)
        ]

    def _matches(self, a: Assignment, filt: AssignmentFilter) -> bool:
        if filt.status and a.status != filt.status:
            return False
        if not filt.status and filt.statuses and a.status not in filt.statuses:
            return False
        if filt.recipient_id and filt.recipient_id not in a.assignedTo:
            return False
        if filt.text:
            needle = filt.text.lower()
            if needle not in a.title.lower() and needle not in a.description.lower():
                return False
        return True

    async def search(self, filt, skip=0, limit=None) -> Tuple[List[Assignment], int]:
        found = sorted(
            (a for a in self.items.values() if self._matches(a, filt)),
            key=lambda a: a.createdAt,
            reverse=True,
        )
        page = found[skip: skip + limit] if limit else found[skip:]
        return [a.model_copy(deep=True) for a in page], len(found)

    async def save(self, assignment: Assignment, expected_version: int) -> bool:
        stored = self.items.get(assignment.assignmentId)
        if stored is not None and self.conflicts_to_inject > 0:
            # someone else wrote in between
            self.conflicts_to_inject -= 1
            stored.version += 1
        if stored is None or stored.version != expected_version:
            return False
        assignment.version = expected_version + 1
        self.put(assignment)
        return True

    async def delete(self, assignment_id: str) -> bool:
        return self.items.pop(assignment_id, None) is not None

    async def complete_many(self, assignment_ids, ts, actor):
        changed = []
        for aid in dict.fromkeys(assignment_ids):
            a = self.items.get(aid)
            if a is None or a.status != "active":
                continue
            a.status = "completed"
            a.completedAt = ts
            a.completedBy = actor
            a.version += 1
            changed.append(a.model_copy(deep=True))
        return changed

    def _is_due(self, a: Assignment, now, stale_before) -> bool:
        if a.status == "scheduled":
            return a.publishDate is not None and a.publishDate <= now
        return a.status == "publishing" and a.claimedAt is not None and a.claimedAt <= stale_before

    async def find_due_scheduled(self, now, stale_before):
        due = [a for a in self.items.values() if self._is_due(a, now, stale_before)]
        return [a.model_copy(deep=True) for a in sorted(due, key=lambda a: a.publishDate)]

    async def claim_for_publication(self, assignment_id, now, stale_before):
        a = self.items.get(assignment_id)
        if a is None or assignment_id in self.claims_lost or not self._is_due(a, now, stale_before):
            return None
        a.status = "publishing"
        a.claimedAt = now
        a.version += 1
        return a.model_copy(deep=True)

    async def set_publication_error(self, assignment_id, message, claimed_at):
        a = self.items.get(assignment_id)
        if a is None or a.status != "publishing" or a.claimedAt != claimed_at:
            return False
        a.status = "publication_error"
        a.publicationError = message
        a.claimedAt = None
        a.version += 1
        return True


class FakeStatsRepo(StatsRepo):
    def __init__(self):
        self.items: dict[str, TeacherStats] = {}
        self.upserts = 0

    async def find(self, recipient_id):
        return self.items.get(recipient_id)

    async def upsert(self, stats):
        self.upserts += 1
        self.items[stats.recipientId] = stats


class FakeRosterRepo(RosterRepo):
    def __init__(self, ids: Sequence[str]):
        self.ids = list(ids)
        self.fail = False

    async def list_recipient_ids(self):
        if self.fail:
            raise RuntimeError("users collection unavailable")
        return list(self.ids)

    async def existing_ids(self, recipient_ids):
        return {r for r in recipient_ids if r in self.ids}


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.sent: list[tuple[list[str], dict]] = []
        self.fail = False

    async def notify(self, recipient_ids, payload):
        if self.fail:
            raise ConnectionError("broker down")
        self.sent.append((list(recipient_ids), payload))

    def events(self) -> list[str]:
        return [p["event"] for _, p in self.sent]


class RecordingFileStore(FileStore):
    def __init__(self, clock):
        self.clock = clock
        self.discarded: list[Attachment] = []

    async def stage(self, uploads):
        return [
            Attachment(fileName=u.filename, fileUrl=f"/tmp/{u.filename}", uploadedAt=self.clock.now())
            for u in uploads
            if u is not None and u.filename
        ]

    async def discard(self, attachments):
        self.discarded.extend(attachments)


# ------------------------------- Fixtures -------------------------------------
@pytest.fixture
def clock():
    return FixedClock(DUE - timedelta(days=2))


@pytest.fixture
def repo():
    return FakeAssignmentRepo()


@pytest.fixture
def stats_repo():
    return FakeStatsRepo()


@pytest.fixture
def roster():
    return FakeRosterRepo(["t1", "t2", "t3"])


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def file_store(clock):
    return RecordingFileStore(clock)


@pytest.fixture
def aggregator(repo, stats_repo, clock):
    return StatsAggregator(repo, stats_repo, clock)


@pytest.fixture
def ledger(repo, file_store, aggregator, clock):
    return ResponseLedger(repo, file_store, aggregator, clock)


@pytest.fixture
def service(repo, roster, aggregator, dispatcher, file_store, clock):
    return AssignmentService(repo, roster, aggregator, dispatcher, file_store, clock)


@pytest.fixture
def engine(repo, roster, ledger, aggregator, dispatcher, clock):
    return AdminOverrideEngine(repo, roster, ledger, aggregator, dispatcher, clock)


@pytest.fixture
def scheduler(repo, roster, aggregator, dispatcher, clock):
    return SchedulePublisher(repo, roster, aggregator, dispatcher, clock, interval=0.01)


@pytest.fixture
def admin():
    return UserContext(user_id="admin1", role="admin")


@pytest.fixture
def teacher():
    return UserContext(user_id="t1", role="recipient")


@pytest.fixture
def teacher2():
    return UserContext(user_id="t2", role="recipient")


@pytest.fixture
def make_assignment(repo, clock):
    counter = {"n": 0}

    def _make(**overrides) -> Assignment:
        counter["n"] += 1
        base = dict(
            assignmentId=f"as-test{counter['n']:04d}",
            title=f"Compito {counter['n']}",
            description="Desc",
            dueDate=DUE,
            closeDate=CLOSE,
            isGeneral=False,
            assignedTo=["t1"],
            status="active",
            createdAt=clock.now() + timedelta(seconds=counter["n"]),
            createdBy="admin1",
        )
        base.update(overrides)
        return repo.put(Assignment(**base))

    return _make
