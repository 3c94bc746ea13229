import asyncio
from urllib.parse import parse_qs, urlsplit

import pytest

from bulk_data.errors import ExportRequestError, TaskCanceledError
from bulk_data.importer.export_task import ExportTask
from tests.conftest import make_rows


def query_of(url):
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


async def test_links_cover_the_virtual_dataset(db_rows):
    await db_rows(make_rows(25, "Patient") + make_rows(4, "Observation"))

    task = ExportTask(types=["Patient"], resources_per_file=20, multiplier=2, wait_time=0)
    await task.init()

    assert [(link.type, link.count) for link in task.links] == [("Patient", 20), ("Patient", 20), ("Patient", 10)]
    urls = [urlsplit(link.url) for link in task.links]
    assert [u.path for u in urls] == [
        "/fhir/bulkfiles/1.Patient.ndjson",
        "/fhir/bulkfiles/2.Patient.ndjson",
        "/fhir/bulkfiles/3.Patient.ndjson",
    ]
    assert [query_of(link.url)["offset"] for link in task.links] == ["0", "20", "40"]
    assert query_of(task.links[0].url) == {"limit": "20", "offset": "0", "m": "2"}


async def test_all_types_when_none_requested(db_rows):
    await db_rows(make_rows(3, "Patient") + make_rows(2, "Observation"))
    task = ExportTask(output_format="csv", wait_time=0)
    await task.init()
    assert sorted((link.type, link.count) for link in task.links) == [("Observation", 2), ("Patient", 3)]
    assert all(urlsplit(link.url).path.endswith(".csv") for link in task.links)


async def test_unknown_type_is_rejected(db_rows):
    await db_rows(make_rows(1, "Patient"))
    task = ExportTask(types=["Spaceship"])
    with pytest.raises(ExportRequestError) as info:
        await task.init()
    assert info.value.status_code == 400
    assert "Spaceship" in str(info.value)


async def test_too_many_files(db_rows, monkeypatch):
    monkeypatch.setattr("bulk_data.importer.export_task.settings.max_files", 3)
    await db_rows(make_rows(10, "Patient"))
    task = ExportTask(types=["Patient"], resources_per_file=2)
    with pytest.raises(ExportRequestError) as info:
        await task.init()
    assert info.value.status_code == 413


async def test_types_without_matches_are_reported(db_rows):
    rows = make_rows(2, "Patient") + make_rows(2, "Observation")
    rows[0]["group_id"] = 1
    await db_rows(rows)

    task = ExportTask(types=["Patient", "Observation"], group=1, wait_time=0)
    await task.init()
    manifest = task.manifest()

    assert [(e.type, e.count) for e in manifest.output] == [("Patient", 1)]
    assert query_of(manifest.output[0].url)["group"] == "1"
    assert len(manifest.error) == 1
    assert "Observation" in query_of(manifest.error[0].url)["message"]


async def test_generation_runs_to_completion(db_rows):
    await db_rows(make_rows(3, "Patient"))
    task = ExportTask(wait_time=0.05)
    progress = []
    task.on("progress", lambda info: progress.append(info["position"]))

    runner = await task.start()
    await asyncio.wait_for(runner, timeout=5)

    assert task.ended
    assert task.error is None
    assert progress[-1] == 100


async def test_cancel_stops_generation(db_rows):
    await db_rows(make_rows(3, "Patient"))
    task = ExportTask(wait_time=10)
    runner = await task.start()
    await asyncio.sleep(0.2)
    task.cancel()
    await asyncio.gather(runner, return_exceptions=True)
    assert isinstance(task.error, TaskCanceledError)
    assert task.position < 100
