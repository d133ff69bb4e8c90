from fastapi.testclient import TestClient

from mediastore.main import app


def test_openapi_includes_standard_error_schema() -> None:
    with TestClient(app) as client:
        spec = client.get("/openapi.json").json()

    components = spec.get("components", {}).get("schemas", {})
    assert "ErrorResponse" in components

    init_responses = spec["paths"]["/api/files/upload/init"]["post"]["responses"]
    assert "401" in init_responses
    assert init_responses["401"]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")
    assert "409" in init_responses


def test_openapi_lists_upload_routes() -> None:
    with TestClient(app) as client:
        paths = client.get("/openapi.json").json()["paths"]

    for path in (
        "/api/files/upload/check",
        "/api/files/upload/chunk",
        "/api/files/upload/progress",
        "/api/files/upload/images",
        "/api/storage/stats",
    ):
        assert path in paths
