"""Seed a demo chip into the local SQLite registry, then scan it against a running service:
- fresh counter          -> authentic
- same counter again     -> cloned
- next counter, wrong page -> mismatch
- bad signature          -> invalid
Start the service first: uvicorn chipverify.main:app
"""
import json, os, subprocess, sys
import requests
from chipverify import db

BASE = os.environ.get("CHIPVERIFY_URL", "http://127.0.0.1:8000")
SECRET = "demo-secret"
TAG = "DEMO-TAG-1"

def sign(ctr):
    out = subprocess.check_output([sys.executable, "tools/make_chip_signature.py", SECRET, TAG, str(ctr)])
    return out.decode("utf-8").strip()

def seed():
    db.configure(os.environ.get("CHIPVERIFY_DB_PATH", "data/chipverify.db"))
    db.init_db()
    if db.get_chip_by_tag(TAG) is None:
        db.insert_chip("demo-chip-1", TAG, secret=SECRET, counter=0)
        db.insert_artwork("demo-art-1", owner_id="demo-user", username="demo")
        db.link_chip("demo-chip-1", "demo-art-1")
    return db.get_chip_by_tag(TAG)["counter"]

def scan(label, **params):
    r = requests.get(BASE + "/verify-chip", params=params, timeout=10)
    print(f"{label}: {r.status_code} {json.dumps(r.json())}")

def main():
    ctr = seed() + 1
    scan("fresh", a=TAG, c=sign(ctr), ctr=ctr, page_artwork_id="demo-art-1")
    scan("replay", a=TAG, c=sign(ctr), ctr=ctr, page_artwork_id="demo-art-1")
    scan("other page", a=TAG, c=sign(ctr + 1), ctr=ctr + 1, page_artwork_id="demo-art-2")
    scan("forged", a=TAG, c="00" * 32, ctr=ctr + 2)

if __name__ == "__main__":
    main()
