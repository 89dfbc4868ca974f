import json
import os

from fastapi.testclient import TestClient

os.environ["SKIP_DB_INIT"] = "1"
from debt_intake.main import app

client = TestClient(app)
HEADERS = {"X-User-Id": "user-1"}


def _upload(content, file_name="batch.csv", import_type="accounts", headers=HEADERS, **form):
    data = {"import_type": import_type}
    data.update(form)
    return client.post(
        "/imports",
        files={"file": (file_name, content, "text/csv")},
        data=data,
        headers=headers,
    )


def _run(job_id, chunk_size=100):
    for _ in range(100):
        response = client.post(f"/imports/{job_id}/process", json={"chunk_size": chunk_size})
        assert response.status_code == 200, response.text
        body = response.json()
        if body["completed"] or body["cancelled"]:
            return body
    raise AssertionError("import did not complete")


def test_root():
    """Test root endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"message": "Debt Intake API", "version": "1.0.0"}


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["service"] == "debt-intake-api"


def test_full_import_flow(make_csv, account_rows):
    """Upload, validate and process a file through the HTTP API."""
    rows = account_rows(5)
    rows[4]["ssn"] = "12-3"
    response = _upload(make_csv(rows))
    assert response.status_code == 201, response.text
    job = response.json()["job"]
    assert job["status"] == "uploaded"
    assert job["owner_id"] == "user-1"

    response = client.post(f"/imports/{job['id']}/validate")
    assert response.status_code == 200, response.text
    validation = response.json()
    assert (validation["valid_rows"], validation["invalid_rows"]) == (4, 1)
    assert validation["errors"][0]["row_number"] == 5

    final = _run(job["id"], chunk_size=3)
    assert final["status"] == "completed"
    assert final["next_start_index"] == 4

    job = client.get(f"/imports/{job['id']}").json()["job"]
    assert job["processed_rows"] == 4
    assert job["failed_rows_available"] is True
    assert job["performance_metrics"]["successful_rows"] == 4

    errors = client.get(f"/imports/{job['id']}/errors").json()["errors"]
    assert [error["field"] for error in errors] == ["ssn"]

    response = client.get(f"/imports/{job['id']}/failed-rows")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert f"failed_rows_{job['id']}.csv" in response.headers["content-disposition"]
    assert "error_message" in response.text.splitlines()[0]


def test_process_without_body_uses_default_chunk(make_csv, account_rows):
    job = _upload(make_csv(account_rows(3))).json()["job"]
    client.post(f"/imports/{job['id']}/validate")
    response = client.post(f"/imports/{job['id']}/process")
    assert response.status_code == 200
    assert response.json()["completed"] is True


def test_upload_errors(make_csv, account_rows):
    assert _upload(b"", "empty.csv").status_code == 400
    assert _upload(b"a,b\n1,2\n", "data.json").status_code == 400
    assert _upload(make_csv(account_rows(1)), field_mapping="not json").status_code == 400
    response = _upload(make_csv(account_rows(1)), import_type="invoices")
    assert response.status_code == 400


def test_mapping_error_lists_missing_fields(make_csv, account_rows):
    rows = [{key: value for key, value in row.items() if key != "ssn"} for row in account_rows(1)]
    job = _upload(make_csv(rows)).json()["job"]

    response = client.post(f"/imports/{job['id']}/validate")
    assert response.status_code == 422
    assert response.json()["detail"]["missing_fields"] == ["ssn"]
    assert client.get(f"/imports/{job['id']}").json()["job"]["status"] == "uploaded"


def test_field_mapping_form_value(make_csv, account_rows):
    rows = [{("Tax ID" if key == "ssn" else key): value for key, value in row.items()} for row in account_rows(2)]
    mapping = {
        "original_account_number": "original_account_number",
        "current_balance": "current_balance",
        "Tax ID": "ssn",
    }
    job = _upload(make_csv(rows), field_mapping=json.dumps(mapping)).json()["job"]
    response = client.post(f"/imports/{job['id']}/validate")
    assert response.status_code == 200
    assert response.json()["valid_rows"] == 2


def test_state_errors_are_conflicts(make_csv, account_rows):
    job = _upload(make_csv(account_rows(1))).json()["job"]
    assert client.post(f"/imports/{job['id']}/process").status_code == 409
    assert client.post(f"/imports/{job['id']}/cancel").status_code == 409


def test_invalid_chunk_request():
    response = client.post("/imports/some-id/process", json={"chunk_size": 0})
    assert response.status_code == 422


def test_unknown_job():
    assert client.get("/imports/does-not-exist").status_code == 404
    assert client.post("/imports/does-not-exist/validate").status_code == 404
    assert client.delete("/imports/does-not-exist").status_code == 404


def test_failed_rows_not_available(make_csv, account_rows):
    job = _upload(make_csv(account_rows(2))).json()["job"]
    client.post(f"/imports/{job['id']}/validate")
    response = client.get(f"/imports/{job['id']}/failed-rows")
    assert response.status_code == 404
    assert "not available" in response.json()["detail"]


def test_cancel_midway(make_csv, account_rows):
    job = _upload(make_csv(account_rows(6))).json()["job"]
    client.post(f"/imports/{job['id']}/validate")
    client.post(f"/imports/{job['id']}/process", json={"chunk_size": 2})

    response = client.post(f"/imports/{job['id']}/cancel")
    assert response.status_code == 200
    assert response.json()["job"]["status"] == "cancelled"
    assert client.post(f"/imports/{job['id']}/process", json={"chunk_size": 2}).status_code == 409


def test_delete_with_confirmation(make_csv, account_rows):
    job = _upload(make_csv(account_rows(2)), file_name="march.csv").json()["job"]
    client.post(f"/imports/{job['id']}/validate")
    _run(job["id"])

    assert client.delete(f"/imports/{job['id']}", params={"file_name": "april.csv"}).status_code == 400
    response = client.delete(f"/imports/{job['id']}", params={"file_name": "march.csv"})
    assert response.status_code == 200
    assert response.json()["summary"]["primary_deleted"] == 2
    assert client.get(f"/imports/{job['id']}").status_code == 404


def test_list_imports(make_csv, account_rows):
    _upload(make_csv(account_rows(1)), file_name="mine.csv")
    _upload(make_csv(account_rows(1)), file_name="theirs.csv", headers={"X-User-Id": "user-2"})

    body = client.get("/imports", headers=HEADERS).json()
    assert body["total_count"] == 1
    assert body["jobs"][0]["file_name"] == "mine.csv"
    assert client.get("/imports", params={"status": "bogus"}).status_code == 400


def test_preview(make_csv, account_rows):
    response = client.post(
        "/imports/preview",
        files={"file": ("batch.csv", make_csv(account_rows(15)), "text/csv")},
        data={"import_type": "accounts"},
    )
    assert response.status_code == 200
    body = response.json()
    assert len(body["sample_rows"]) == 10
    assert body["suggested_mapping"]["current_balance"] == "current_balance"


def test_template_endpoints():
    payload = {
        "name": "Vendor A",
        "import_type": "accounts",
        "field_mappings": {"Acct Ref": "original_account_number", "Amt": "current_balance", "Tax ID": "ssn"},
        "validation_rules": [{"type": "preset", "column": "Zip", "preset": "postal_code_us"}],
    }
    response = client.post("/import-templates", json=payload, headers=HEADERS)
    assert response.status_code == 201, response.text
    template = response.json()["template"]
    assert template["owner_id"] == "user-1"
    assert template["validation_rules"] == [{"type": "preset", "column": "Zip", "preset": "postal_code_us"}]

    assert client.post("/import-templates", json=payload, headers=HEADERS).status_code == 409
    assert client.post("/import-templates", json={**payload, "name": "  "}, headers=HEADERS).status_code == 422

    listed = client.get("/import-templates", params={"import_type": "accounts"}, headers=HEADERS).json()
    assert [entry["name"] for entry in listed["templates"]] == ["Vendor A"]

    url = f"/import-templates/{template['id']}"
    assert client.put(url, json={"name": "Stolen"}, headers={"X-User-Id": "user-2"}).status_code == 403
    response = client.put(url, json={"description": "Monthly file"}, headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["template"]["description"] == "Monthly file"

    assert client.delete(url, headers=HEADERS).json()["success"] is True
    assert client.get(url).status_code == 404


def test_validation_presets():
    response = client.get("/import-templates/validation-presets")
    assert response.status_code == 200
    presets = {preset["name"]: preset for preset in response.json()["presets"]}
    assert presets["postal_code_us"]["description"] == "US ZIP code (5 or 9 digits)"
    assert presets["ssn"]["pattern"] == r"^\d{3}-\d{2}-\d{4}$"
