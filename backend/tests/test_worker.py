"""
Worker smoke test: request files in, result documents out.
"""
import asyncio
import json
import signal

from personality_engine.config import settings
from workers.worker import AnalysisWorker

from fakes import POST_TEXTS, FakeClient, FakeRedis


def test_worker_processes_request_files(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite:///{tmp_path / 'db' / 'analysis.db'}")
    monkeypatch.setattr(settings, "INTER_STAGE_DELAY_S", 0.0)
    monkeypatch.setattr(settings, "RETRY_BASE_DELAY_S", 0.0)
    monkeypatch.setattr(signal, "signal", lambda *args: None)

    analyze = tmp_path / "analyze.json"
    analyze.write_text(json.dumps({
        "kind": "analyze",
        "identity": "maya",
        "posts": [{"text": text} for text in POST_TEXTS],
        "profile": {"name": "maya", "bio": "Building developer tools"},
    }))
    chat = tmp_path / "chat.json"
    chat.write_text(json.dumps({"kind": "chat", "identity": "maya",
                                "messages": [{"role": "user", "content": "hi"}]}))

    redis_client = FakeRedis()
    worker = AnalysisWorker(tmp_path / "out", redis_client=redis_client, client=FakeClient())
    outstanding = asyncio.run(worker.run([analyze, chat]))

    assert outstanding == 0
    documents = {doc["result"].get("role", "analysis"): doc
                 for doc in (json.loads(p.read_text()) for p in (tmp_path / "out").glob("*.json"))}
    assert documents["assistant"]["result"]["content"] == "Happy to help with that build question!"
    analysis = documents["analysis"]
    assert analysis["status"] == "completed"
    assert analysis["result"]["summary"].startswith("Maya")
    assert analysis["duration_ms"] >= 0
    assert analysis["finished_at"].endswith("+00:00")
    assert json.loads(redis_client.data[settings.QUEUE_STATE_KEY])["items"] == []
