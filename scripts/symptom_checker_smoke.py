#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from fastapi.testclient import TestClient

# Minimal PNG payload.
_PIXEL_PNG = bytes.fromhex(
  "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
  "1f15c4890000000d49444154789c6360000002000154a24f5d0000000049454e44ae426082"
)


@dataclass
class Step:
  name: str
  call: Callable[[TestClient], Any]
  check: Callable[[Any], str | None]


def _json_or_raw(response: Any) -> Any:
  try:
    return response.json()
  except ValueError:
    return {"raw": response.text[:500]}


def _expect_ok(response: Any, *keys: str) -> str | None:
  if response.status_code != 200:
    return f"status {response.status_code}: {response.text[:200]}"
  body = _json_or_raw(response)
  missing = [key for key in keys if not body.get(key)]
  if missing:
    return f"missing {', '.join(missing)} in response"
  return None


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  # Keep smoke records out of the local history database.
  scratch_db = Path(tempfile.mkdtemp(prefix="symptom-smoke-")) / "smoke.sqlite"
  os.environ.setdefault("SYMPTOM_CHECKER_DB_PATH", str(scratch_db))

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  user_id = f"smoke-user-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}"
  headers = {"Authorization": f"Bearer {user_id}"}
  state: dict[str, Any] = {}

  def list_history(client: TestClient) -> Any:
    response = client.get("/api/history", headers=headers)
    items = _json_or_raw(response).get("items") or []
    text_items = [item for item in items if item.get("type") == "text"]
    if text_items:
      state["text_record_id"] = text_items[0]["id"]
    return response

  steps = [
    Step(
      name="Analyze text symptoms",
      call=lambda client: client.post(
        "/api/analyze-text",
        headers=headers,
        json={"symptoms": "Fever of 38.5C, chills and body aches since yesterday."},
      ),
      check=lambda response: _expect_ok(response, "diagnosis"),
    ),
    Step(
      name="Analyze image upload",
      call=lambda client: client.post(
        "/api/analyze-image",
        headers=headers,
        files={"image": ("smoke-pixel.png", _PIXEL_PNG, "image/png")},
      ),
      check=lambda response: _expect_ok(response, "diagnosis", "imageData"),
    ),
    Step(
      name="Read image analysis back",
      call=lambda client: client.get(
        "/api/analyze-image",
        headers=headers,
        params={"imageName": "smoke-pixel.png"},
      ),
      check=lambda response: _expect_ok(response, "diagnosis", "messageId"),
    ),
    Step(
      name="List history",
      call=list_history,
      check=lambda response: _expect_ok(response, "items"),
    ),
    Step(
      name="Edit text record symptoms",
      call=lambda client: client.patch(
        f"/api/history/{state.get('text_record_id', 'missing')}",
        headers=headers,
        json={"symptoms": "Fever, chills, body aches and a mild cough."},
      ),
      check=lambda response: _expect_ok(response, "symptoms"),
    ),
    Step(
      name="Delete text record",
      call=lambda client: client.delete(
        f"/api/history/{state.get('text_record_id', 'missing')}",
        headers=headers,
      ),
      check=lambda response: _expect_ok(response, "deleted"),
    ),
  ]

  results: list[dict[str, Any]] = []
  with TestClient(backend_module.app) as client:
    for step in steps:
      response = step.call(client)
      error = step.check(response)
      results.append(
        {
          "name": step.name,
          "status_code": response.status_code,
          "body": _json_or_raw(response),
          "pass": error is None,
          "error": error,
        }
      )

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Symptom Checker Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- User partition: `{user_id}`",
    f"- Text model: `{backend_module.container.gateway.text_model}`",
    f"- Image model: `{backend_module.container.gateway.image_model}`",
    f"- Total steps: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Step Results",
    "",
  ]

  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append(f"- Status code: `{item.get('status_code')}`")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    body = item.get("body")
    if isinstance(body, dict) and isinstance(body.get("imageData"), str):
      body = {**body, "imageData": body["imageData"][:48] + "..."}
    report_lines.append("```json")
    report_lines.append(json.dumps(body, indent=2, ensure_ascii=True))
    report_lines.append("```")
    report_lines.append("")

  report_path = repo_root / "SYMPTOM_CHECKER_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} steps.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
