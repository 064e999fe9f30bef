#!/usr/bin/env python3
"""
E2E Flow Walkthrough Script
Walks one participant through the whole experiment against a running server:
start → terms → pre-test (submission) → lesson (transcript + cursor) →
tetris-break → post-test → final-test → completed → finalize.
Also checks the guard: opening the lesson view while at pre-test resets the flow.

Usage:
    python run.py                      # in another terminal
    python scripts/e2e_flow_walkthrough.py [participant_id]
"""

import json
import sys
import time
import uuid
import requests
from datetime import datetime, timezone
from pathlib import Path

BASE_URL = "http://localhost:8000"
ARTIFACTS_DIR = Path(__file__).parent / "e2e_artifacts"
ARTIFACTS_DIR.mkdir(exist_ok=True)

REPORT_LINES = []
CHECKS = {"pass": 0, "fail": 0}


def log(msg):
    print(msg)
    REPORT_LINES.append(msg)


def check(label, ok, detail=""):
    CHECKS["pass" if ok else "fail"] += 1
    extra = f"  ({detail})" if detail else ""
    log(f"  [{'PASS' if ok else 'FAIL'}] {label}{extra}")
    return ok


def save_artifact(name, data):
    path = ARTIFACTS_DIR / f"{name}.json"
    with open(path, "w") as f:
        json.dump(data, f, indent=2, default=str)
    return path


def api(method, path, json_body=None, params=None, expect_ok=True):
    url = f"{BASE_URL}{path}"
    resp = requests.request(method, url, json=json_body, params=params, timeout=120)
    if expect_ok and resp.status_code >= 400:
        log(f"  [ERROR] {method} {path} → {resp.status_code}: {resp.text[:500]}")
    return resp


def advance(pid, from_stage):
    return api("POST", f"/api/flow/{pid}/advance", {"fromStage": from_stage})


def test_payload(pid, test_type, answers):
    return {
        "userId": pid,
        "testType": test_type,
        "score": len(answers),  # ignored by the server
        "duration": 60000,
        "questions": [
            {
                "questionId": i + 1,
                "questionText": f"{test_type} question {i + 1}",
                "userAnswer": answer,
                "correctAnswer": "42",
            }
            for i, answer in enumerate(answers)
        ],
    }


# ============================================================================
# STEP A: Environment
# ============================================================================
def step_a_environment():
    log("\n" + "=" * 70)
    log("STEP A: Environment Verification")
    log("=" * 70)
    r = api("GET", "/health")
    log(f"  Health: {r.json()}")
    check("Server healthy", r.status_code == 200)


# ============================================================================
# STEP B: Guard reset
# ============================================================================
def step_b_guard(pid):
    log("\n" + "=" * 70)
    log("STEP B: Guard resets a participant who skips ahead")
    log("=" * 70)
    flow = api("POST", f"/api/flow/{pid}/start").json()
    check("Starts at terms", flow["flowStage"] == "terms", flow["flowStage"])
    advance(pid, "terms")

    r = api("GET", f"/api/flow/{pid}/views/lesson", expect_ok=False)
    body = r.json()
    save_artifact("guard_reset", body)
    check("Lesson view at pre-test answers 409", r.status_code == 409, str(r.status_code))
    check("Redirected to entry", body.get("redirect") == "/")
    check("Flow back at terms", body.get("flow", {}).get("flowStage") == "terms")


# ============================================================================
# STEP C: Full walk
# ============================================================================
def step_c_full_flow(pid):
    log("\n" + "=" * 70)
    log("STEP C: Full flow")
    log("=" * 70)

    advance(pid, "terms")
    r = api("GET", f"/api/flow/{pid}/views/pre-test")
    check("Pre-test view renders", r.status_code == 200)

    r = api("POST", "/api/tests", test_payload(pid, "pre", ["42", "41", ""]))
    data = r.json()["data"]
    check("Pre-test scored server-side", data["score"] == 1, f"score={data['score']}")

    flow = advance(pid, "pre-test").json()
    log(f"  Lesson path: {flow['nextPath']}")
    check("Lesson condition assigned", flow["lessonType"] is not None, flow["lessonType"])

    for index in range(2):
        r = api("POST", "/api/sessions", {
            "userId": pid,
            "questionId": index,
            "questionText": f"Lesson problem {index + 1}",
            "finalAnswer": "42",
            "isCorrect": True,
            "messages": [
                {"id": -1, "sender": "system", "text": "scaffolding"},
                {"id": 0, "sender": "ai", "agentId": "bob", "text": "Let's start."},
                {"id": 1, "sender": "user", "text": "Is it 42?"},
            ],
        })
        check(f"Transcript {index} stored", r.json().get("status") == "created")
        api("POST", f"/api/flow/{pid}/lesson-question/advance", {"fromIndex": index})

    for stage in ["lesson", "tetris-break"]:
        advance(pid, stage)

    api("POST", "/api/tests", test_payload(pid, "post", ["42", "42", "7"]))
    advance(pid, "post-test")

    r = api("POST", "/api/tests", test_payload(pid, "final", ["42", "42", "42"]))
    check("Final test accepted at final-test", r.status_code == 200)
    api("POST", "/api/surveys", {"userId": pid, "section": "post-test", "data": {"enjoyment": 4}})

    flow = advance(pid, "final-test").json()
    check("Reached completed", flow["flowStage"] == "completed")

    r = api("POST", f"/api/users/{pid}/finalize")
    result = r.json()
    save_artifact("finalize", result)
    check("Sessions closed", result["updatedSessionCount"] == 2, str(result["updatedSessionCount"]))
    again = api("POST", f"/api/users/{pid}/finalize").json()
    check("Finalize is idempotent", again["updatedSessionCount"] == 0)

    r = api("POST", f"/api/flow/{pid}/advance", {"fromStage": "completed"}, expect_ok=False)
    check("Completed is terminal", r.status_code == 409)


def main():
    start_time = time.time()
    pid = sys.argv[1] if len(sys.argv) > 1 else f"e2e-{uuid.uuid4().hex[:8]}"
    log("=" * 70)
    log(f"E2E Flow Walkthrough - {pid} - Started at {datetime.now(timezone.utc).isoformat()}")
    log("=" * 70)

    try:
        step_a_environment()
        step_b_guard(pid)
        step_c_full_flow(pid)
    except Exception as e:
        log(f"\n[FATAL ERROR] {type(e).__name__}: {e}")
        import traceback
        log(traceback.format_exc())
        CHECKS["fail"] += 1

    elapsed = time.time() - start_time
    log(f"\n  Results: {CHECKS['pass']} passed, {CHECKS['fail']} failed")
    log(f"  Total test time: {elapsed:.1f}s")
    log(f"  Artifacts saved to: {ARTIFACTS_DIR}")

    report_path = ARTIFACTS_DIR / "flow_walkthrough.txt"
    with open(report_path, "w") as f:
        f.write("\n".join(REPORT_LINES))

    return 0 if CHECKS["fail"] == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
