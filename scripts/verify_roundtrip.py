import hashlib
import os
import sys

import httpx


def main() -> int:
    base_url = os.getenv("VERIFY_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
    payload = os.urandom(int(os.getenv("VERIFY_PAYLOAD_BYTES", "1048577")))
    chunk_size = int(os.getenv("VERIFY_CHUNK_SIZE", "65536"))
    print(f"Checking round trip at {base_url} ({len(payload)} bytes, chunk_size={chunk_size})")
    with httpx.Client(base_url=base_url, timeout=30.0) as client:
        try:
            health = client.get("/health")
        except httpx.HTTPError as exc:
            print(f"[FAIL] Could not connect to service: {exc}")
            return 1
        if health.status_code != 200:
            print(f"[FAIL] /health status={health.status_code}")
            return 1

        upload = client.post(
            "/v1/files",
            params={"filename": "verify.bin", "chunk_size": chunk_size},
            content=payload,
        )
        if upload.status_code != 201:
            print(f"[FAIL] upload status={upload.status_code} body={upload.text}")
            return 2
        record = upload.json()
        print(f"[INFO] stored id={record['id']} length={record['length']} checksum={record['checksum']}")

        download = client.get(f"/v1/files/{record['id']}")
        if download.content != payload:
            print("[FAIL] downloaded bytes differ from the upload")
            return 3
        if record["checksum"] != hashlib.md5(payload).hexdigest():
            print("[WARN] checksum is not an md5 digest; checksum_algorithm may be overridden")

        start, end = chunk_size - 3, chunk_size + 3
        partial = client.get(f"/v1/files/{record['id']}", headers={"Range": f"bytes={start}-{end}"})
        if partial.status_code != 206 or partial.content != payload[start : end + 1]:
            print(f"[FAIL] range read across a chunk boundary failed: status={partial.status_code}")
            return 4

        cached = client.get(f"/v1/files/{record['id']}", headers={"If-None-Match": record["checksum"]})
        print(f"[INFO] conditional GET status={cached.status_code}")

        client.delete(f"/v1/files/{record['id']}")
        print("[OK] round trip, range read and delete succeeded.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
