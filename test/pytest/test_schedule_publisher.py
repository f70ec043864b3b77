import asyncio
from datetime import timedelta

import pytest

from app.schemas.assignment import ScheduledAssignmentCreate

from conftest import CLOSE, DUE


def _scheduled(make_assignment, clock, **overrides):
    base = dict(status="scheduled", publishDate=clock.now() + timedelta(hours=1), assignedTo=[])
    base.update(overrides)
    return make_assignment(**base)


@pytest.mark.asyncio
async def test_general_roster_snapshot_at_publication(service, scheduler, repo, roster, clock, admin):
    roster.ids = ["t1", "t2", "t3"]
    data = ScheduledAssignmentCreate(
        title="Piano annuale",
        description="Consegna del piano",
        publishDate=clock.now() + timedelta(hours=1),
        dueDate=DUE,
        closeDate=CLOSE,
        isGeneral=True,
    )
    created = await service.schedule_assignment(data, admin)
    assert repo.stored(created.assignmentId).assignedTo == []

    roster.ids = ["t1", "t2", "t3", "t4", "t5"]
    assert await scheduler.run_once() == []

    clock.advance(timedelta(hours=1))
    published = await scheduler.run_once()

    stored = repo.stored(created.assignmentId)
    assert published == [created.assignmentId]
    assert stored.status == "active"
    assert stored.publishedAt == clock.now()
    assert len(stored.assignedTo) == 5


@pytest.mark.asyncio
async def test_published_assignments_notify_and_refresh_stats(
    scheduler, repo, stats_repo, dispatcher, clock, make_assignment
):
    a = _scheduled(make_assignment, clock, assignedTo=["t1", "t2"], publishDate=clock.now())
    await scheduler.run_once()

    assert repo.stored(a.assignmentId).status == "active"
    assert dispatcher.events() == ["assignment.published"]
    assert dispatcher.sent[0][0] == ["t1", "t2"]
    assert stats_repo.items["t1"].stats.total == 1


@pytest.mark.asyncio
async def test_failure_isolation(scheduler, repo, roster, clock, make_assignment):
    ok = _scheduled(make_assignment, clock, assignedTo=["t1"], publishDate=clock.now() - timedelta(minutes=2))
    broken = _scheduled(make_assignment, clock, isGeneral=True, publishDate=clock.now() - timedelta(minutes=1))
    roster.ids = []

    published = await scheduler.run_once()

    assert published == [ok.assignmentId]
    assert repo.stored(ok.assignmentId).status == "active"
    failed = repo.stored(broken.assignmentId)
    assert failed.status == "publication_error"
    assert "No recipients" in failed.publicationError


@pytest.mark.asyncio
async def test_roster_exception_is_captured_on_the_item(scheduler, repo, roster, clock, make_assignment):
    a = _scheduled(make_assignment, clock, isGeneral=True, publishDate=clock.now())
    roster.fail = True
    assert await scheduler.run_once() == []
    stored = repo.stored(a.assignmentId)
    assert stored.status == "publication_error"
    assert stored.publicationError == "users collection unavailable"


@pytest.mark.asyncio
async def test_publication_error_is_not_retried(scheduler, repo, roster, clock, make_assignment):
    a = _scheduled(make_assignment, clock, isGeneral=True, publishDate=clock.now())
    roster.ids = []
    await scheduler.run_once()
    roster.ids = ["t1"]
    clock.advance(timedelta(hours=1))
    assert await scheduler.run_once() == []
    assert repo.stored(a.assignmentId).status == "publication_error"


@pytest.mark.asyncio
async def test_notification_failure_is_not_fatal(scheduler, repo, dispatcher, clock, make_assignment):
    a = _scheduled(make_assignment, clock, assignedTo=["t1"], publishDate=clock.now())
    dispatcher.fail = True
    assert await scheduler.run_once() == [a.assignmentId]
    assert repo.stored(a.assignmentId).status == "active"


@pytest.mark.asyncio
async def test_lost_claim_is_skipped(scheduler, repo, dispatcher, clock, make_assignment):
    a = _scheduled(make_assignment, clock, assignedTo=["t1"], publishDate=clock.now())
    repo.claims_lost.add(a.assignmentId)
    assert await scheduler.run_once() == []
    assert repo.stored(a.assignmentId).status == "scheduled"
    assert dispatcher.sent == []


@pytest.mark.asyncio
async def test_overlapping_runs_publish_once(scheduler, dispatcher, clock, make_assignment):
    _scheduled(make_assignment, clock, assignedTo=["t1"], publishDate=clock.now())
    first, second = await asyncio.gather(scheduler.run_once(), scheduler.run_once())
    assert len(first) + len(second) == 1
    assert len(dispatcher.sent) == 1


@pytest.mark.asyncio
async def test_stale_claim_is_taken_over(scheduler, repo, clock, make_assignment):
    a = _scheduled(
        make_assignment,
        clock,
        status="publishing",
        assignedTo=["t1"],
        publishDate=clock.now() - timedelta(hours=1),
        claimedAt=clock.now() - timedelta(minutes=10),
    )
    assert await scheduler.run_once() == [a.assignmentId]
    assert repo.stored(a.assignmentId).status == "active"


@pytest.mark.asyncio
async def test_fresh_claim_is_left_alone(scheduler, repo, clock, make_assignment):
    a = _scheduled(
        make_assignment,
        clock,
        status="publishing",
        assignedTo=["t1"],
        publishDate=clock.now() - timedelta(minutes=1),
        claimedAt=clock.now() - timedelta(seconds=30),
    )
    assert await scheduler.run_once() == []
    assert repo.stored(a.assignmentId).status == "publishing"


@pytest.mark.asyncio
async def test_superseded_claim_cannot_fail_the_item(scheduler, repo, clock, monkeypatch, make_assignment):
    a = _scheduled(make_assignment, clock, assignedTo=["t1"], publishDate=clock.now())
    takeover_at = clock.now() + timedelta(seconds=1)
    original_save = repo.save

    async def save_after_takeover(assignment, expected_version):
        # un'altra esecuzione riprende l'assignment mentre questa sta pubblicando
        stored = repo.stored(assignment.assignmentId)
        stored.claimedAt = takeover_at
        stored.version += 1
        monkeypatch.setattr(repo, "save", original_save)
        return await original_save(assignment, expected_version)

    monkeypatch.setattr(repo, "save", save_after_takeover)
    assert await scheduler.run_once() == []

    stored = repo.stored(a.assignmentId)
    assert stored.status == "publishing"
    assert stored.publicationError is None
    assert stored.claimedAt == takeover_at

    clock.advance(timedelta(minutes=6))
    assert await scheduler.run_once() == [a.assignmentId]
    assert repo.stored(a.assignmentId).status == "active"


@pytest.mark.asyncio
async def test_current_claim_holder_records_the_failure(repo, clock, make_assignment):
    a = _scheduled(make_assignment, clock, assignedTo=["t1"], publishDate=clock.now())
    claimed = await repo.claim_for_publication(a.assignmentId, clock.now(), clock.now() - timedelta(minutes=5))

    assert not await repo.set_publication_error(a.assignmentId, "boom", clock.now() - timedelta(minutes=10))
    assert repo.stored(a.assignmentId).status == "publishing"
    assert await repo.set_publication_error(a.assignmentId, "boom", claimed.claimedAt)
    assert repo.stored(a.assignmentId).status == "publication_error"


@pytest.mark.asyncio
async def test_start_and_stop(scheduler, repo, clock, make_assignment):
    a = _scheduled(make_assignment, clock, assignedTo=["t1"], publishDate=clock.now())
    scheduler.start()
    assert scheduler.running
    for _ in range(100):
        if repo.stored(a.assignmentId).status == "active":
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()
    assert not scheduler.running
    assert repo.stored(a.assignmentId).status == "active"
