import json
from pathlib import Path

from crm_core.main import app


def test_openapi_paths_snapshot():
    snapshot_path = Path(__file__).parent / "snapshots" / "openapi_paths_snapshot.json"
    expected_paths = json.loads(snapshot_path.read_text(encoding="utf-8"))
    actual_paths = sorted(app.openapi()["paths"].keys())
    assert actual_paths == expected_paths


def test_error_envelope_documented_on_send():
    responses = app.openapi()["paths"]["/campaigns/{campaign_id}/send"]["post"]["responses"]
    assert {"404", "409", "500"} <= set(responses)
