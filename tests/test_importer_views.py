import io
from unittest.mock import Mock, patch

from app import create_app


def test_health_endpoint_reports_configuration(client):
    response = client.get("/importer/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["enabled"] is True
    assert payload["worker_enabled"] is False
    assert payload["remote_store_configured"] is True
    assert payload["modes"] == ["enrollment", "courses"]


def test_enrollment_endpoint_runs_rows(client, liceo_store):
    response = client.post(
        "/importer/enrollment",
        json={"rows": [{"RBD": 12345, "AGNO": 2025, "ID_NIVEL": 4, "N_ALU": 31}]},
    )

    assert response.status_code == 200, response.get_json()
    payload = response.get_json()
    assert payload["rows_total"] == 1
    assert payload["courses_updated"] == 1
    assert payload["results"][0]["course_id"] == "liceo-a-p1"
    assert liceo_store.headcount_of("liceo-a-p1") == 31


def test_enrollment_endpoint_accepts_datos_alias(client, liceo_store):
    response = client.post(
        "/importer/enrollment",
        json={"datos": [{"rbd": "12345", "agno": "2025", "nivel": "2° Medio", "n_alu": "27"}], "concurrency": "2"},
    )

    assert response.status_code == 200, response.get_json()
    assert liceo_store.headcount_of("liceo-a-s2") == 27


def test_enrollment_endpoint_reports_row_failures_in_summary(client, liceo_store):
    response = client.post(
        "/importer/enrollment",
        json={"rows": [{"rbd": 12345, "id_nivel": 4, "n_alu": 10}, {"rbd": 12345, "id_nivel": 4}]},
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["errors"] == 1
    assert payload["results"][1]["outcome"] == "failed"
    assert payload["results"][1]["messages"][-1] == "Missing headcount."


def test_enrollment_endpoint_validates_payload(client, fake_store):
    not_json = client.post("/importer/enrollment", data="rbd=1", content_type="text/plain")
    empty_rows = client.post("/importer/enrollment", json={"rows": []})
    bad_rows = client.post("/importer/enrollment", json={"rows": [1, 2]})
    bad_mode = client.post("/importer/enrollment", json={"rows": [{"rbd": 1}], "mode": "students"})
    bad_concurrency = client.post("/importer/enrollment", json={"rows": [{"rbd": 1}], "concurrency": "many"})

    assert not_json.status_code == 400
    assert empty_rows.status_code == 400
    assert "non-empty 'rows'" in empty_rows.get_json()["error"]
    assert bad_rows.status_code == 400
    assert bad_mode.status_code == 400
    assert "Unsupported mode" in bad_mode.get_json()["error"]
    assert bad_concurrency.status_code == 400
    assert fake_store.created_orgs == []


def test_enrollment_endpoint_maps_snapshot_failures_to_bad_gateway(client, fake_store):
    fake_store.fail_snapshot = True

    response = client.post("/importer/enrollment", json={"rows": [{"rbd": 1, "n_alu": 3}]})

    assert response.status_code == 502
    assert "HTTP 503" in response.get_json()["error"]


def test_enrollment_endpoint_without_remote_store_is_unavailable(app, client):
    app.extensions["importer"]["store_factory"] = None
    app.config["REMOTE_STORE_URL"] = ""

    response = client.post("/importer/enrollment", json={"rows": [{"rbd": 1, "n_alu": 3}]})

    assert response.status_code == 503
    assert "REMOTE_STORE_URL" in response.get_json()["error"]


def test_upload_queues_import(app, client, tmp_path):
    async_result = Mock()
    async_result.id = "celery-task-upload"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result

    with patch("crm_app.importer.views.get_celery_app", return_value=celery_app):
        response = client.post(
            "/importer/enrollment/upload",
            data={
                "file": (io.BytesIO(b"rbd,agno,id_nivel,n_alu\n12345,2025,4,30\n"), "matricula.csv"),
                "mode": "courses",
            },
            content_type="multipart/form-data",
        )

    assert response.status_code == 202, response.get_json()
    payload = response.get_json()
    assert payload["task_id"] == "celery-task-upload"
    assert payload["mode"] == "courses"
    assert payload["queue"] == "enrollment_imports"

    task_kwargs = celery_app.send_task.call_args.kwargs["kwargs"]
    assert task_kwargs["keep_file"] is False
    assert task_kwargs["mode"] == "courses"
    stored = tmp_path / "uploads"
    assert str(stored) in task_kwargs["file_path"]
    assert len(list(stored.iterdir())) == 1


def test_upload_enqueue_failure_removes_file(client, tmp_path):
    celery_app = Mock()
    celery_app.send_task.side_effect = RuntimeError("broker down")

    with patch("crm_app.importer.views.get_celery_app", return_value=celery_app):
        response = client.post(
            "/importer/enrollment/upload",
            data={"file": (io.BytesIO(b"rbd\n1\n"), "matricula.csv")},
            content_type="multipart/form-data",
        )

    assert response.status_code == 500
    assert list((tmp_path / "uploads").iterdir()) == []


def test_upload_rejects_non_csv_and_missing_files(client):
    wrong_type = client.post(
        "/importer/enrollment/upload",
        data={"file": (io.BytesIO(b"{}"), "matricula.json")},
        content_type="multipart/form-data",
    )
    missing = client.post("/importer/enrollment/upload", data={}, content_type="multipart/form-data")

    assert wrong_type.status_code == 400
    assert "only CSV" in wrong_type.get_json()["error"]
    assert missing.status_code == 400


def test_status_endpoint_reports_task_state(client):
    async_result = Mock()
    async_result.state = "SUCCESS"
    async_result.successful.return_value = True
    async_result.result = {"rows_total": 2}
    celery_app = Mock()
    celery_app.AsyncResult.return_value = async_result

    with patch("crm_app.importer.views.get_celery_app", return_value=celery_app):
        response = client.get("/importer/enrollment/abc-123")

    assert response.status_code == 200
    assert response.get_json() == {"task_id": "abc-123", "state": "SUCCESS", "summary": {"rows_total": 2}}
    celery_app.AsyncResult.assert_called_once_with("abc-123")


def test_verify_endpoint(client, liceo_store):
    liceo_store.update_course_headcount("liceo-a-s1", 40)

    response = client.get("/importer/verify?breakdown=1")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["orgs_with_courses"] == 1
    assert payload["courses_total"] == 10
    assert payload["headcount_coverage"] == 10.0
    assert payload["courses_per_org"] == {"liceo-a": 10}


def test_metrics_endpoint_exposes_importer_counters(client, liceo_store):
    client.post("/importer/enrollment", json={"rows": [{"rbd": 12345, "id_nivel": 4, "n_alu": 10}]})

    response = client.get("/metrics")

    assert response.status_code == 200
    body = response.get_data(as_text=True)
    assert "importer_api_requests_total" in body
    assert 'endpoint="enrollment"' in body


def test_disabled_importer_has_no_routes(tmp_path):
    disabled_app = create_app(
        {
            "IMPORTER_ENABLED": False,
            "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
            "ENABLE_CONSOLE_LOGGING": False,
        }
    )

    response = disabled_app.test_client().post("/importer/enrollment", json={"rows": [{"rbd": 1}]})

    assert response.status_code == 404
    assert response.get_json() == {"error": "Not found."}
