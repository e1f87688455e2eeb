"""Export the scan audit trail from a running service to scan_events_<epoch>.json.
Requires AUDIT_EXPORT_TOKEN (the same value the service was started with).
Usage: python tools/export_scan_events.py [chip_id]
"""
import json, os, sys, time
import requests

BASE = os.environ.get("CHIPVERIFY_URL", "http://127.0.0.1:8000")

def main(chip_id=None):
    token = os.environ.get("AUDIT_EXPORT_TOKEN")
    if not token:
        print("AUDIT_EXPORT_TOKEN is not set"); raise SystemExit(2)
    params = {"limit": 1000}
    if chip_id:
        params["chip_id"] = chip_id
    r = requests.get(BASE + "/audit/scan_events", params=params,
                     headers={"x-audit-token": token}, timeout=30)
    r.raise_for_status()
    events = r.json()
    out = f"scan_events_{int(time.time())}.json"
    with open(out, "w", encoding="utf-8") as f:
        json.dump(events, f, indent=2)
    print(f"{out}: {len(events)} events")

if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else None)
