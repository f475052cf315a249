# client_drip_demo.py
#
# Minimal Python client to:
#   1) tap the faucet N times for one address (POST /drip-token)
#   2) show what is pending settlement (GET /queue)
#
# Usage:
#   python client_drip_demo.py 0xYourAddress --taps 3
#
# Server assumptions:
#   - app.py running at BASE_URL
#   - requests are settled in batches, so the answer is "queued", never a txid

import argparse
import json
import os
from typing import Dict, Any

import requests
from dotenv import load_dotenv

load_dotenv()

# ---------------------------
# Config
# ---------------------------
BASE_URL = os.getenv("FAUCET_BASE_URL", "http://127.0.0.1:3010")


# ---------------------------
# API calls
# ---------------------------
def drip(base_url: str, address: str) -> Dict[str, Any]:
    r = requests.post(f"{base_url}/drip-token", json={"address": address}, timeout=30)
    if r.status_code != 200:
        raise RuntimeError(f"drip-token failed {r.status_code}: {r.text}")
    return r.json()


def get_queue(base_url: str) -> Dict[str, Any]:
    r = requests.get(f"{base_url}/queue", timeout=30)
    if r.status_code != 200:
        raise RuntimeError(f"queue failed {r.status_code}: {r.text}")
    return r.json()


# ---------------------------
# Demo main
# ---------------------------
def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Tap the drip faucet and show the pending queue.")
    ap.add_argument("address", help="EVM address to receive the tokens")
    ap.add_argument("--taps", type=int, default=1, help="number of drip requests to send")
    ap.add_argument("--base-url", default=BASE_URL, help="faucet backend URL")
    args = ap.parse_args(argv)

    base_url = args.base_url.rstrip("/")
    for i in range(max(1, args.taps)):
        res = drip(base_url, args.address)
        print(f"[drip] #{i + 1} {res['message']} (queued={res['queued']})")

    print("[queue]", json.dumps(get_queue(base_url), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
