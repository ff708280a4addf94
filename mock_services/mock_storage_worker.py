"""
mock_storage_worker.py — Mock Implementation of the Object Storage Worker (REST API)

This module simulates the storage worker that clients talk to directly with
capability tokens from the print order service. Bytes are written to a local
directory. Before accepting or serving any bytes the worker redeems the bearer
token with the print order service, which enforces signature, expiry, scope
and single use.

Endpoints:
    POST /upload                — Stores the request body, returns the new storage key.
    GET  /download/{key}        — Streams a stored object back.

Port:
    Default: 8002 (HTTP)
"""

import logging
import os
import uuid

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse

app = FastAPI(title="Mock Storage Worker")
logging.basicConfig(level=logging.INFO)

ORDER_SERVICE_URL = os.environ.get("ORDER_SERVICE_URL", "http://localhost:8000")
STORAGE_WORKER_API_KEY = os.environ.get("STORAGE_WORKER_API_KEY", "dev-worker-key")
STORAGE_ROOT = os.environ.get("STORAGE_ROOT", "./storage_data")

client = httpx.Client(
    base_url=ORDER_SERVICE_URL,
    headers={"X-Storage-Worker-Key": STORAGE_WORKER_API_KEY},
    timeout=httpx.Timeout(5.0),
)


def redeem(authorization, operation, storage_key=None):
    """
    Redeems the client's bearer token with the order service.

    Raises:
        HTTPException(401): Missing bearer token.
        HTTPException(403): Token refused by the order service.
        HTTPException(503): Order service unreachable.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Bearer token required")
    payload = {"token": authorization[len("Bearer "):], "operation": operation, "storage_key": storage_key}
    try:
        response = client.post("/api/files/redeem", json=payload)
    except httpx.TransportError as e:
        logging.error(f"[STORAGE] Order service unreachable: {e}")
        raise HTTPException(status_code=503, detail="Authorization service unavailable")
    if response.status_code != 200:
        logging.warning(f"[STORAGE] {operation} refused: {response.text}")
        raise HTTPException(status_code=403, detail=response.json())
    return response.json()


def _path_for(storage_key):
    path = os.path.abspath(os.path.join(STORAGE_ROOT, storage_key))
    if not path.startswith(os.path.abspath(STORAGE_ROOT) + os.sep):
        raise HTTPException(status_code=400, detail="Invalid storage key")
    return path


@app.post("/upload")
async def upload(request: Request, authorization: str = Header(None)):
    """Stores the raw request body under the token's key prefix."""
    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Empty upload")
    grant = await run_in_threadpool(redeem, authorization, "upload")

    storage_key = f"{grant['scope']}{uuid.uuid4().hex}"
    path = _path_for(storage_key)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(body)
    logging.info(f"[STORAGE] Stored {len(body)} bytes as {storage_key}.")
    return {"key": storage_key, "size": len(body)}


@app.get("/download/{storage_key:path}")
def download(storage_key: str, authorization: str = Header(None)):
    redeem(authorization, "download", storage_key=storage_key)
    path = _path_for(storage_key)
    if not os.path.exists(path):
        raise HTTPException(status_code=404, detail="Object not found")
    logging.info(f"[STORAGE] Serving {storage_key}.")
    return FileResponse(path)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8002)
