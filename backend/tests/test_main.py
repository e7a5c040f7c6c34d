"""Unit tests for the Household Ledger API endpoints."""
import os

from fastapi.testclient import TestClient

from household_ledger.models import Goal, GoalDataSource, Transaction, TransactionType

from conftest import OTHER_ACCESS_TOKEN, OTHER_USER_ID, USER_ID


def upload(client, auth_headers, content, name="gastos.csv"):
    if isinstance(content, str):
        content = content.encode("utf-8")
    return client.post(
        "/imports/upload",
        files={"file": (name, content, "text/csv")},
        headers=auth_headers,
    )


def uploaded_session(client, auth_headers, content, expense=True):
    session_id = upload(client, auth_headers, content).json()["session_id"]
    if expense:
        client.post(f"/imports/{session_id}/type", json={"type": "expense"}, headers=auth_headers)
    return session_id


def test_read_root(client: TestClient):
    """Test the root endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"message": "Household Ledger API"}


def test_upload_csv(client: TestClient, auth_headers, sample_csv_file):
    """Test uploading a CSV file opens a session with the positional mapping."""
    with open(sample_csv_file, "rb") as f:
        response = client.post(
            "/imports/upload",
            files={"file": ("gastos.csv", f, "text/csv")},
            headers=auth_headers,
        )

    assert response.status_code == 200
    data = response.json()
    assert data["message"] == "File uploaded successfully"
    assert len(data["session_id"]) == 32
    assert data["total_rows"] == 3
    assert data["type"] is None
    assert data["mapping"] == ["date", "amount", "person", "category", "subcategory", "notes"]
    assert data["missing_required"] == []
    assert data["columns"][0]["header"] == "Data"
    assert data["columns"][0]["samples"] == ["15/03/2024", "2024-03-16", "17/03/24"]
    assert data["columns"][5]["samples"] == ["compras do mês"]
    assert [f["label"] for f in data["fields"]][:4] == ["Data", "Valor", "Pessoa", "Categoria"]


def test_upload_requires_auth(client: TestClient, sample_csv_content):
    response = upload(client, {}, sample_csv_content)
    assert response.status_code == 401

    response = upload(client, {"Authorization": "Bearer unknown"}, sample_csv_content)
    assert response.status_code == 401


def test_upload_non_spreadsheet_file(client: TestClient, auth_headers):
    """Test uploading a non-spreadsheet file should fail."""
    response = upload(client, auth_headers, "This is not a CSV file", name="test.txt")

    assert response.status_code == 400
    assert "CSV" in response.json()["detail"]


def test_upload_header_only(client: TestClient, auth_headers):
    response = upload(client, auth_headers, "Data,Valor,Pessoa,Categoria\n")
    assert response.status_code == 400
    assert response.json()["detail"] == "Arquivo vazio ou sem dados suficientes."


def test_get_import(client: TestClient, auth_headers, sample_csv_content):
    session_id = uploaded_session(client, auth_headers, sample_csv_content)

    response = client.get(f"/imports/{session_id}", headers=auth_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["type"] == "expense"
    assert data["errors"] == []


def test_session_of_other_user_not_found(client: TestClient, auth_headers, sample_csv_content):
    session_id = uploaded_session(client, auth_headers, sample_csv_content)

    response = client.get(
        f"/imports/{session_id}", headers={"Authorization": f"Bearer {OTHER_ACCESS_TOKEN}"}
    )
    assert response.status_code == 404


def test_unknown_session(client: TestClient, auth_headers):
    response = client.get("/imports/" + "0" * 32, headers=auth_headers)
    assert response.status_code == 404
    assert response.json()["detail"] == "Importação não encontrada."


def test_invalid_type(client: TestClient, auth_headers, sample_csv_content):
    session_id = uploaded_session(client, auth_headers, sample_csv_content, expense=False)
    response = client.post(f"/imports/{session_id}/type", json={"type": "transfer"}, headers=auth_headers)
    assert response.status_code == 422


def test_map_column(client: TestClient, auth_headers, sample_csv_content):
    """Mapping a field to another column moves it there."""
    session_id = uploaded_session(client, auth_headers, sample_csv_content)

    response = client.post(
        f"/imports/{session_id}/mapping",
        json={"column_index": 5, "field": "date"},
        headers=auth_headers,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["mapping"] == ["ignored", "amount", "person", "category", "subcategory", "date"]
    assert data["missing_required"] == []

    response = client.post(
        f"/imports/{session_id}/mapping",
        json={"column_index": 5, "field": "ignored"},
        headers=auth_headers,
    )
    assert response.json()["missing_required"] == ["Data"]


def test_map_column_invalid(client: TestClient, auth_headers, sample_csv_content):
    session_id = uploaded_session(client, auth_headers, sample_csv_content)

    response = client.post(
        f"/imports/{session_id}/mapping", json={"column_index": 9, "field": "date"}, headers=auth_headers
    )
    assert response.status_code == 400

    response = client.post(
        f"/imports/{session_id}/mapping", json={"column_index": 0, "field": "valor"}, headers=auth_headers
    )
    assert response.status_code == 400


def test_preview_requires_type(client: TestClient, auth_headers, sample_csv_content):
    session_id = uploaded_session(client, auth_headers, sample_csv_content, expense=False)

    response = client.post(f"/imports/{session_id}/preview", headers=auth_headers)
    assert response.status_code == 400
    assert "tipo" in response.json()["detail"]


def test_preview_requires_mapping(client: TestClient, auth_headers, sample_csv_content):
    session_id = uploaded_session(client, auth_headers, sample_csv_content)
    client.post(
        f"/imports/{session_id}/mapping", json={"column_index": 2, "field": "ignored"}, headers=auth_headers
    )

    response = client.post(f"/imports/{session_id}/preview", headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["missing_fields"] == ["Pessoa"]


def test_preview_valid_file(client: TestClient, auth_headers, sample_csv_content):
    session_id = uploaded_session(client, auth_headers, sample_csv_content)

    response = client.post(f"/imports/{session_id}/preview", headers=auth_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["error_count"] == 0
    assert data["errors"] == []
    assert data["columns"] == ["Data", "Valor", "Pessoa", "Categoria", "Subcategoria", "Observação"]
    assert data["rows"][0]["row"] == 2
    assert data["rows"][0]["values"]["Valor"] == "127,61"


def test_preview_caps_errors(client: TestClient, auth_headers):
    content = "Data,Valor,Pessoa,Categoria\n" + "ontem,10,João,Alimentação\n" * 60
    session_id = uploaded_session(client, auth_headers, content)

    data = client.post(f"/imports/{session_id}/preview", headers=auth_headers).json()
    assert data["error_count"] == 60
    assert len(data["errors"]) == 50
    assert data["remaining_errors"] == 10
    assert data["errors"][0] == {"row": 2, "field": "Data", "message": 'Data inválida: "ontem"'}
    assert len(data["rows"]) == 20

    stored = client.get(f"/imports/{session_id}", headers=auth_headers).json()
    assert len(stored["errors"]) == 60


def test_commit_import(client: TestClient, auth_headers, sample_csv_content, store):
    session_id = uploaded_session(client, auth_headers, sample_csv_content)

    response = client.post(f"/imports/{session_id}/commit", headers=auth_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "success"
    assert data["imported"] == 3
    assert len(store.list_transactions(USER_ID)) == 3

    logs = client.get("/import-logs", headers=auth_headers).json()["logs"]
    assert len(logs) == 1
    assert logs[0]["file_name"] == "gastos.csv"
    assert logs[0]["imported_records"] == 3

    summary = client.get(f"/imports/{session_id}", headers=auth_headers).json()
    assert summary["result"]["status"] == "success"


def test_commit_twice(client: TestClient, auth_headers, sample_csv_content, store):
    session_id = uploaded_session(client, auth_headers, sample_csv_content)
    client.post(f"/imports/{session_id}/commit", headers=auth_headers)

    response = client.post(f"/imports/{session_id}/commit", headers=auth_headers)
    assert response.status_code == 409
    assert response.json()["detail"] == "Este arquivo já foi importado."
    assert len(store.transactions) == 3


def test_commit_with_errors(client: TestClient, auth_headers, store):
    content = "Data,Valor,Pessoa,Categoria\n2024-01-01,10,João,Alimentação\n2024-01-02,10,Zé,Alimentação\n"
    session_id = uploaded_session(client, auth_headers, content)

    response = client.post(f"/imports/{session_id}/commit", headers=auth_headers)
    assert response.status_code == 400
    assert store.transactions == []
    assert store.import_logs == []


def test_import_logs_are_per_user(client: TestClient, auth_headers, sample_csv_content):
    session_id = uploaded_session(client, auth_headers, sample_csv_content)
    client.post(f"/imports/{session_id}/commit", headers=auth_headers)

    response = client.get("/import-logs", headers={"Authorization": f"Bearer {OTHER_ACCESS_TOKEN}"})
    assert response.json() == {"logs": []}


def test_ingest_transaction(client: TestClient, auth_headers, store):
    response = client.post(
        "/ingest/transaction",
        json={"type": "expense", "amount": "42,50", "person": "maria", "category": "transporte", "date": "2024-05-01"},
        headers=auth_headers,
    )
    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["transaction"]["amount"] == 42.5
    assert data["transaction"]["date"] == "2024-05-01"
    assert data["transaction"]["notes"] == "[API]"
    assert len(store.transactions) == 1


def test_ingest_validation_details(client: TestClient, auth_headers):
    response = client.post("/ingest/transaction", json={"type": "expense"}, headers=auth_headers)
    assert response.status_code == 400
    data = response.json()
    assert data["detail"] == "Validation failed."
    assert len(data["details"]) == 3


def test_ingest_requires_auth(client: TestClient):
    response = client.post("/ingest/transaction", json={})
    assert response.status_code == 401


def test_ingest_invalid_json(client: TestClient, auth_headers):
    response = client.post(
        "/ingest/transaction",
        content=b"not json",
        headers={**auth_headers, "Content-Type": "application/json"},
    )
    assert response.status_code == 400


def test_ai_status(client: TestClient, auth_headers):
    response = client.post("/ai/enable", json={"action": "status"}, headers=auth_headers)
    assert response.status_code == 200
    assert response.json() == {"ai_enabled": False, "has_token": False, "phone": None}


def test_ai_unknown_action(client: TestClient, auth_headers):
    response = client.post("/ai/enable", json={"action": "reset"}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Unknown action"


def test_ai_generate_without_webhook(client: TestClient, auth_headers):
    response = client.post(
        "/ai/enable", json={"action": "generate-code", "phone": "11987654321"}, headers=auth_headers
    )
    assert response.status_code == 503


def test_ai_requires_auth(client: TestClient):
    response = client.post("/ai/enable", json={"action": "status"})
    assert response.status_code == 401


def test_goals(client: TestClient, auth_headers, store):
    store.transactions.append(
        Transaction(
            user_id=USER_ID,
            type=TransactionType.INCOME,
            date="2024-01-10",
            amount=250.0,
            person_id="p-joao",
            category_id="c-salary",
        )
    )
    store.goals.append(
        Goal(id="g-1", user_id=USER_ID, title="Renda", target_value=1000, data_source=GoalDataSource.INCOME)
    )

    response = client.get("/goals", headers=auth_headers)
    assert response.status_code == 200
    goals = response.json()["goals"]
    assert len(goals) == 1
    assert goals[0]["goal"]["current_value"] == 250.0
    assert goals[0]["progress"] == 25.0


def test_upload_purges_stale_sessions(
    client: TestClient, auth_headers, sample_csv_content, temp_progress_dir
):
    stale_id = uploaded_session(client, auth_headers, sample_csv_content)
    os.utime(temp_progress_dir / f"{stale_id}.json", (0, 0))

    upload(client, auth_headers, sample_csv_content)

    assert client.get(f"/imports/{stale_id}", headers=auth_headers).status_code == 404


def test_admin_users_requires_admin(client: TestClient):
    response = client.post(
        "/admin/users", json={"action": "list"}, headers={"Authorization": f"Bearer {OTHER_ACCESS_TOKEN}"}
    )
    assert response.status_code == 403
    assert response.json()["detail"] == "Forbidden"


def test_admin_deactivates_user(client: TestClient, auth_headers, store):
    store.update_profile(USER_ID, roles=["admin"])

    users = client.post("/admin/users", json={"action": "list"}, headers=auth_headers).json()["users"]
    assert len(users) == 2

    response = client.post(
        "/admin/users", json={"action": "deactivate", "userId": OTHER_USER_ID}, headers=auth_headers
    )
    assert response.json() == {"success": True}

    response = client.get("/import-logs", headers={"Authorization": f"Bearer {OTHER_ACCESS_TOKEN}"})
    assert response.status_code == 401


def test_external_query_unconfigured(client: TestClient):
    response = client.post("/external/query", json={"phone_number": "11987654321"})
    assert response.status_code == 500


def test_external_query(client: TestClient, store, monkeypatch):
    import household_ledger.main as main_module

    monkeypatch.setattr(main_module.services.external, "admin_token", "automation-secret")
    store.update_profile(USER_ID, phone="5511987654321")

    response = client.post("/external/query", json={"phone_number": "11987654321"})
    assert response.status_code == 401

    headers = {"Authorization": "Bearer automation-secret"}
    response = client.post("/external/query", json={"phone_number": "11987654321"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["financial"]["total_transactions"] == 0

    response = client.post("/external/query", content=b"{", headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid JSON body."
