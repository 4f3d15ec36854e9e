import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from review_engine.main import create_app
from review_engine.runtime import ReviewRuntime


def seed_review_job(
    store,
    document_id: str,
    *,
    title: str = "Quarterly supplier report",
    content: str = "Revenue grew in every region during the third quarter.",
    priority: int = 0,
    queue_name: str = "manual-review",
    **extra,
):
    data = {
        "document_id": document_id,
        "status": "pending",
        "payload": {
            "document": {"title": title, "content": content},
            "source": {"type": "upload", "filename": f"{document_id}.pdf"},
            "metadata": {"pages": 3},
        },
        "flags": [],
        "tags": [],
    }
    data.update(extra)
    return store.add_job(queue_name, data, priority=priority, job_id=document_id)


@pytest.fixture
def runtime() -> ReviewRuntime:
    return ReviewRuntime.build()


@pytest.fixture
def store(runtime: ReviewRuntime):
    return runtime.job_store


@pytest.fixture
def engine(runtime: ReviewRuntime):
    return runtime.engine


@pytest.fixture
def seed(store):
    def _seed(document_id: str, **kwargs):
        return seed_review_job(store, document_id, **kwargs)

    return _seed


@pytest.fixture
def client(runtime: ReviewRuntime) -> TestClient:
    return TestClient(create_app(runtime))


@pytest.fixture
def seed_job():
    return seed_review_job
