from types import SimpleNamespace

import httpx
import pytest

from notebook_scanner.scanning import (
    HttpCallbackSink,
    InMemoryScanRepository,
    InvalidTransition,
    JobNotFound,
    NotebookRecord,
    OpenAIVisionRecognitionEngine,
    PageRegistry,
    RecognitionEngine,
    RecognitionFailure,
    RecognitionWorker,
    ScanJobService,
    ScanJobState,
    ServiceCallbackSink,
)
from notebook_scanner.scanning.recognition import strip_code_fences


class FakeEngine(RecognitionEngine):
    def __init__(self, text="", error=None):
        self.text = text
        self.error = error
        self.calls = []

    def recognize(self, image_urls):
        self.calls.append(list(image_urls))
        if self.error:
            raise self.error
        return self.text


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _fake_client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _setup():
    repo = InMemoryScanRepository()
    repo.save_notebook(NotebookRecord(id="nb-1", owner_id="user-1", title="Field notes"))
    page = PageRegistry(repo).register("nb-1", 0)
    service = ScanJobService(repo)
    return repo, service, page


def test_worker_completes_job_through_service():
    repo, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg"])
    engine = FakeEngine(text="Groceries\n--kw TODO buy eggs")

    assert RecognitionWorker(engine, ServiceCallbackSink(service)).run(job.id, job.image_urls)

    done = repo.get_job(job.id)
    assert done.state == ScanJobState.DONE
    assert done.structured.tasks == ["buy eggs"]
    assert engine.calls == [["http://img/1.jpg"]]
    assert [t.title for t in repo.list_tasks("user-1")] == ["buy eggs"]


def test_worker_reports_recognition_failure():
    repo, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg"])
    engine = FakeEngine(error=RecognitionFailure("Recognition returned no text"))

    assert not RecognitionWorker(engine, ServiceCallbackSink(service)).run(job.id, job.image_urls)

    failed = repo.get_job(job.id)
    assert failed.state == ScanJobState.FAILED
    assert failed.error_message == "Recognition returned no text"


def test_worker_records_unexpected_errors_and_reraises():
    repo, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg"])
    engine = FakeEngine(error=RuntimeError("engine crashed"))

    with pytest.raises(RuntimeError):
        RecognitionWorker(engine, ServiceCallbackSink(service)).run(job.id, job.image_urls)

    assert repo.get_job(job.id).error_message == "engine crashed"


def test_worker_skips_superseded_job():
    repo, service, page = _setup()
    stale = service.submit(page.id, ["http://img/1.jpg"])
    service.submit(page.id, ["http://img/2.jpg"])
    engine = FakeEngine(text="--kw TODO never")

    assert not RecognitionWorker(engine, ServiceCallbackSink(service)).run(stale.id, stale.image_urls)

    assert engine.calls == []
    assert repo.get_job(stale.id).error_message == "superseded"
    assert repo.list_tasks("user-1") == []


def test_worker_drops_result_when_job_resolved_meanwhile():
    repo, service, page = _setup()
    job = service.submit(page.id, ["http://img/1.jpg"])

    class SupersedingEngine(FakeEngine):
        def recognize(self, image_urls):
            service.submit(page.id, ["http://img/2.jpg"])
            return "--kw TODO too late"

    assert not RecognitionWorker(SupersedingEngine(), ServiceCallbackSink(service)).run(job.id, job.image_urls)
    assert repo.get_job(job.id).state == ScanJobState.FAILED
    assert repo.list_tasks("user-1") == []


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("```\n--kw TODO x\n```", "--kw TODO x"),
        ("```text\nhello\nworld\n```", "hello\nworld"),
        ("  plain  ", "plain"),
        ("", ""),
        (None, ""),
    ],
)
def test_strip_code_fences(raw, expected):
    assert strip_code_fences(raw) == expected


def test_openai_engine_sends_prompt_and_images():
    completions = FakeCompletions(content="```\nMilk\n--kw TODO buy eggs\n```")
    engine = OpenAIVisionRecognitionEngine(api_key="test", model="test-model", client=_fake_client(completions))

    text = engine.recognize(["http://img/1.jpg", "http://img/2.jpg"])

    assert text == "Milk\n--kw TODO buy eggs"
    (request,) = completions.requests
    assert request["model"] == "test-model"
    content = request["messages"][0]["content"]
    assert content[0]["type"] == "text"
    assert "--kw" in content[0]["text"]
    assert [part["image_url"]["url"] for part in content[1:]] == ["http://img/1.jpg", "http://img/2.jpg"]


def test_openai_engine_failures_are_typed():
    empty = OpenAIVisionRecognitionEngine(api_key="test", client=_fake_client(FakeCompletions(content="   ")))
    with pytest.raises(RecognitionFailure):
        empty.recognize(["http://img/1.jpg"])

    broken = OpenAIVisionRecognitionEngine(
        api_key="test", client=_fake_client(FakeCompletions(error=RuntimeError("503 from upstream")))
    )
    with pytest.raises(RecognitionFailure) as exc:
        broken.recognize(["http://img/1.jpg"])
    assert "503 from upstream" in exc.value.message

    with pytest.raises(RecognitionFailure):
        empty.recognize([])


def test_http_sink_posts_to_callback_endpoints():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, request.content))
        return httpx.Response(200, json={})

    sink = HttpCallbackSink("http://api.local/", client=httpx.Client(transport=httpx.MockTransport(handler)))
    sink.acknowledge("job-1")
    sink.succeed("job-1", "hello")
    sink.fail("job-2", "boom")

    assert [path for path, _ in seen] == [
        "/page-scans/jobs/job-1/processing",
        "/page-scans/jobs/job-1/callback",
        "/page-scans/jobs/job-2/callback",
    ]
    assert b'"text"' in seen[1][1] and b"hello" in seen[1][1]
    assert b'"error"' in seen[2][1]


def test_http_sink_maps_status_codes_to_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/processing"):
            return httpx.Response(409, json={"error": "InvalidTransition"})
        return httpx.Response(404, json={"error": "NotFound"})

    sink = HttpCallbackSink("http://api.local", client=httpx.Client(transport=httpx.MockTransport(handler)))
    with pytest.raises(InvalidTransition):
        sink.acknowledge("job-1")
    with pytest.raises(JobNotFound):
        sink.succeed("job-1", "text")
