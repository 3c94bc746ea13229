import json

import pytest
from sqlalchemy import func, select

from bulk_data.database import async_session
from bulk_data.errors import NDJSONSyntaxError, ResourceValidationError
from bulk_data.models import DataRow
from bulk_data.services.loader import load_ndjson, patient_reference, purge_records, resource_to_row
from tests.conftest import make_resource


def write_ndjson(path, resources):
    path.write_text("\n".join(json.dumps(r) for r in resources) + "\n", encoding="utf-8")
    return str(path)


async def count_rows(**filters):
    async with async_session() as session:
        query = select(func.count()).select_from(DataRow).filter_by(**filters)
        return await session.scalar(query)


def test_patient_reference():
    assert patient_reference({"resourceType": "Patient", "id": "p1"}) == "p1"
    assert patient_reference({"resourceType": "Observation", "subject": {"reference": "Patient/p2"}}) == "p2"
    assert patient_reference({"resourceType": "Claim", "patient": {"reference": "Patient/p3"}}) == "p3"
    assert patient_reference({"resourceType": "Organization", "id": "o"}) is None


def test_resource_to_row_uses_last_updated():
    resource = make_resource("Patient", meta={"lastUpdated": "2021-05-06T07:08:09Z"})
    row = resource_to_row(resource, json.dumps(resource), group_id=3)
    assert row["fhir_type"] == "Patient"
    assert row["patient_id"] == resource["id"]
    assert row["group_id"] == 3
    assert row["modified_date"].isoformat() == "2021-05-06T07:08:09+00:00"


async def test_load_ndjson(tmp_path, db_rows):
    resources = [make_resource("Patient") for _ in range(5)]
    path = write_ndjson(tmp_path / "patients.ndjson", resources)
    progress = []

    inserted = await load_ndjson(
        async_session, path, group_id=7, batch_size=2,
        on_progress=lambda *args: progress.append(args)
    )

    assert inserted == 5
    assert await count_rows(group_id=7, fhir_type="Patient") == 5
    assert progress[-1][2] == 5
    assert progress[-1][0] == progress[-1][1]


async def test_load_ndjson_checks_resource_type(tmp_path, db_rows):
    path = write_ndjson(tmp_path / "mixed.ndjson", [make_resource("Patient"), make_resource("Observation")])
    with pytest.raises(ResourceValidationError):
        await load_ndjson(async_session, path, resource_type="Patient")


async def test_load_ndjson_reports_bad_lines(tmp_path, db_rows):
    path = tmp_path / "broken.ndjson"
    path.write_text('{"resourceType":"Patient","id":"1"}\n{oops\n', encoding="utf-8")
    with pytest.raises(NDJSONSyntaxError, match="line 2"):
        await load_ndjson(async_session, str(path))


async def test_purge_records(tmp_path, db_rows):
    path = write_ndjson(tmp_path / "p.ndjson", [make_resource() for _ in range(3)])
    await load_ndjson(async_session, path)

    assert await purge_records(async_session, max_age=3600) == 0
    assert await purge_records(async_session, max_age=-3600) == 3
    assert await count_rows() == 0
