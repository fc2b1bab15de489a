from datetime import datetime, timedelta

import pytest

from notebook_scanner.scanning import (
    InMemoryScanRepository,
    InvalidTransition,
    JobNotFound,
    NotebookRecord,
    PageNotFound,
    PageRegistry,
    RoutingState,
    ScanJobService,
    ScanJobState,
)

PAGE_TEXT = "Buy milk\n--kw TODO: call dentist\n--kw CAL: dentist appt friday 3pm\nJust a note"


def _setup():
    repo = InMemoryScanRepository()
    repo.save_notebook(NotebookRecord(id="nb-1", owner_id="user-1", title="Field notes"))
    page = PageRegistry(repo).register("nb-1", 0)
    return repo, ScanJobService(repo), page


def test_submit_creates_pending_job():
    _, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg", "http://img/2.jpg"])

    assert job.state == ScanJobState.PENDING
    assert job.image_urls == ["http://img/1.jpg", "http://img/2.jpg"]
    assert job.raw_text is None and job.structured is None


def test_submit_validates_page_and_images():
    _, service, page = _setup()
    with pytest.raises(PageNotFound):
        service.submit("missing", ["http://img/1.jpg"])
    with pytest.raises(ValueError):
        service.submit(page.id, [])


def test_new_submission_supersedes_active_job():
    repo, service, page = _setup()
    first = service.submit(page.id, ["http://img/1.jpg"])
    second = service.submit(page.id, ["http://img/2.jpg"])

    old = repo.get_job(first.id)
    assert old.state == ScanJobState.FAILED
    assert old.error_message == "superseded"
    assert repo.get_job(second.id).state == ScanJobState.PENDING

    active = [j for j in repo.jobs.values() if j.page_id == page.id and not j.state.is_terminal]
    assert [j.id for j in active] == [second.id]
    assert service.current_job(page.id).id == second.id


def test_completion_parses_and_routes():
    repo, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg"])

    done = service.complete(job.id, PAGE_TEXT)

    assert done.state == ScanJobState.DONE
    assert done.raw_text == PAGE_TEXT
    assert done.structured.tasks == ["call dentist"]
    assert done.structured.calendar == ["dentist appt friday 3pm"]
    assert done.routing_state == RoutingState.ROUTED
    assert [t.title for t in repo.list_tasks("user-1")] == ["call dentist"]
    assert [e.title for e in repo.list_calendar_events("user-1")] == ["dentist appt friday 3pm"]
    assert repo.get_transcript(page.id).text == done.structured.cleaned_text


def test_duplicate_completion_is_a_no_op():
    repo, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg"])
    first = service.complete(job.id, PAGE_TEXT)

    second = service.complete(job.id, PAGE_TEXT)

    assert second == first
    assert len(repo.list_tasks("user-1")) == 1
    assert len(repo.list_calendar_events("user-1")) == 1


def test_conflicting_completion_is_rejected():
    _, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg"])
    service.complete(job.id, PAGE_TEXT)

    with pytest.raises(InvalidTransition):
        service.complete(job.id, "something else entirely")


def test_superseded_job_cannot_complete():
    repo, service, page = _setup()
    first = service.submit(page.id, ["http://img/1.jpg"])
    service.submit(page.id, ["http://img/2.jpg"])

    with pytest.raises(InvalidTransition):
        service.complete(first.id, PAGE_TEXT)
    assert repo.list_tasks("user-1") == []


def test_failure_semantics():
    _, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg"])

    failed = service.fail(job.id, "model timeout")
    assert failed.state == ScanJobState.FAILED
    assert failed.error_message == "model timeout"

    assert service.fail(job.id, "again") == failed
    with pytest.raises(InvalidTransition):
        service.complete(job.id, PAGE_TEXT)


def test_fail_after_done_is_rejected():
    _, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg"])
    service.complete(job.id, PAGE_TEXT)

    with pytest.raises(InvalidTransition):
        service.fail(job.id, "late failure")


def test_mark_processing_then_complete():
    _, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg"])

    processing = service.mark_processing(job.id)
    assert processing.state == ScanJobState.PROCESSING
    assert service.mark_processing(job.id).state == ScanJobState.PROCESSING

    assert service.complete(job.id, "plain page").state == ScanJobState.DONE
    with pytest.raises(InvalidTransition):
        service.mark_processing(job.id)


def test_unknown_job_ids():
    _, service, _ = _setup()
    with pytest.raises(JobNotFound):
        service.complete("missing", "text")
    with pytest.raises(JobNotFound):
        service.fail("missing", "boom")
    with pytest.raises(JobNotFound):
        service.mark_processing("missing")


def test_empty_recognition_result_completes_with_empty_output():
    repo, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg"])

    done = service.complete(job.id, "")

    assert done.state == ScanJobState.DONE
    assert done.structured.cleaned_text == ""
    assert done.structured.tasks == []
    assert repo.list_tasks("user-1") == []


def test_reap_stale_fails_only_old_active_jobs():
    repo, service, page = _setup()
    other = PageRegistry(repo).register("nb-1", 1)
    stale = service.submit(page.id, ["http://img/1.jpg"])
    finished = service.submit(other.id, ["http://img/2.jpg"])
    service.complete(finished.id, "done already")

    assert service.reap_stale(timedelta(minutes=10)) == []

    reaped = service.reap_stale(timedelta(minutes=10), now=datetime.utcnow() + timedelta(hours=1))

    assert [j.id for j in reaped] == [stale.id]
    assert reaped[0].state == ScanJobState.FAILED
    assert reaped[0].error_message == "timeout"
    assert repo.get_job(finished.id).state == ScanJobState.DONE


def test_routing_failure_keeps_job_done_and_can_be_retried():
    repo, service, page = _setup()
    repo.notebooks.clear()
    job = service.submit(page.id, ["http://img/1.jpg"])

    done = service.complete(job.id, PAGE_TEXT)

    assert done.state == ScanJobState.DONE
    assert done.routing_state == RoutingState.FAILED
    assert done.routing_error
    assert repo.list_tasks("user-1") == []

    repo.save_notebook(NotebookRecord(id="nb-1", owner_id="user-1", title="Field notes"))
    rerouted = service.reroute(job.id)

    assert rerouted.routing_state == RoutingState.ROUTED
    assert rerouted.routing_error is None
    assert [t.title for t in repo.list_tasks("user-1")] == ["call dentist"]

    service.reroute(job.id)
    assert len(repo.list_tasks("user-1")) == 1


def test_reroute_requires_done_job():
    _, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg"])
    with pytest.raises(InvalidTransition):
        service.reroute(job.id)


def test_current_job_prefers_latest():
    _, service, page = _setup()
    assert service.current_job(page.id) is None

    first = service.submit(page.id, ["http://img/1.jpg"])
    service.complete(first.id, "first pass")
    assert service.current_job(page.id).id == first.id

    second = service.submit(page.id, ["http://img/2.jpg"])
    assert service.current_job(page.id).id == second.id

    with pytest.raises(PageNotFound):
        service.current_job("missing")


class _FailingTaskStore(InMemoryScanRepository):
    def __init__(self):
        super().__init__()
        self.broken = True

    def ensure_tasks(self, tasks):
        if self.broken:
            raise RuntimeError("disk full")
        return super().ensure_tasks(tasks)


def test_storage_error_while_routing_marks_routing_failed():
    repo = _FailingTaskStore()
    repo.save_notebook(NotebookRecord(id="nb-1", owner_id="user-1", title="Field notes"))
    page = PageRegistry(repo).register("nb-1", 0)
    service = ScanJobService(repo)
    job = service.submit(page.id, ["http://img/1.jpg"])

    done = service.complete(job.id, PAGE_TEXT)

    assert done.state == ScanJobState.DONE
    assert done.routing_state == RoutingState.FAILED
    assert done.routing_error == "disk full"

    repo.broken = False
    rerouted = service.reroute(job.id)
    assert rerouted.routing_state == RoutingState.ROUTED
    assert [t.title for t in repo.list_tasks("user-1")] == ["call dentist"]


def test_rerouting_an_older_job_keeps_the_newer_transcript():
    repo, service, page = _setup()
    old = service.complete(service.submit(page.id, ["http://img/1.jpg"]).id, "old scan\n--kw TODO old task")
    new = service.complete(service.submit(page.id, ["http://img/2.jpg"]).id, "new scan")

    rerouted = service.reroute(old.id)

    assert rerouted.routing_state == RoutingState.ROUTED
    transcript = repo.get_transcript(page.id)
    assert transcript.text == "new scan"
    assert transcript.job_id == new.id
    assert [t.title for t in repo.list_tasks("user-1")] == ["old task"]


def test_get_job():
    _, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg"])

    assert service.get_job(job.id) == job
    with pytest.raises(JobNotFound):
        service.get_job("missing")
