#!/usr/bin/env python3
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import uvicorn
import yaml  # for /openapi.yaml
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from fhirpath_lab.config import (
    CORS_ORIGINS, DEFAULT_FHIR_VERSION, FHIR_JSON, HOST, LOG_BODY_LIMIT, LOG_LEVEL, PORT,
    SERVICE_NAME, SERVICE_VERSION,
)
from fhirpath_lab.formatter import create_operation_outcome
from fhirpath_lab.models import FhirPathRequest
from fhirpath_lab.parameters import (
    InvalidRequestError, RemoteResourceError, is_remote, load_remote_resource,
    parameters_from_body, parameters_from_query, request_from_parameters,
)
from fhirpath_lab.schema import SUPPORTED_VERSIONS
from fhirpath_lab.service import FhirPathService, engine_version

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(message)s",
)
log = logging.getLogger("fhirpath-lab")

tags_metadata = [
    {"name": "FHIRPath", "description": "The `$fhirpath` operation used by fhirpath-lab, one route per FHIR version."},
    {"name": "Utils", "description": "Capability statement, service health and OpenAPI schema."},
]

app = FastAPI(
    title=SERVICE_NAME,
    version=SERVICE_VERSION,
    description=(
        "Evaluates FHIRPath expressions with fhirpathpy for the fhirpath-lab UI. "
        "Requests and responses are FHIR `Parameters` resources."
    ),
    openapi_tags=tags_metadata,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

service = FhirPathService()


# ---------- Responses ----------
def _json_default(o: Any) -> Any:
    if isinstance(o, Decimal):
        return int(o) if o == o.to_integral_value() and o.as_tuple().exponent >= 0 else float(o)
    return str(o)


class FhirJSONResponse(JSONResponse):
    """Pretty-printed application/fhir+json."""
    media_type = FHIR_JSON

    def render(self, content: Any) -> bytes:
        return json.dumps(content, indent=2, ensure_ascii=False, default=_json_default).encode("utf-8")


def _error_response(message: str, code: str = "invalid", diagnostics: Optional[str] = None,
                    status_code: int = 400) -> FhirJSONResponse:
    return FhirJSONResponse(create_operation_outcome("error", code, message, diagnostics), status_code=status_code)


def _snip(b: bytes, limit: int = LOG_BODY_LIMIT) -> str:
    s = b[:limit].decode("utf-8", errors="replace")
    if len(b) > limit:
        s += f"\n…(snipped {len(b) - limit} bytes)"
    return s


# ---------- Middleware ----------
@app.middleware("http")
async def _log_incoming(request: Request, call_next):
    if LOG_LEVEL in ("DEBUG", "TRACE"):
        body = await request.body()
        log.debug(
            "IN %s %s  content-type=%s  len=%s",
            request.method, request.url.path + ("?" + request.url.query if request.url.query else ""),
            request.headers.get("content-type"), len(body),
        )
        if body:
            log.debug("IN body (snip):\n%s", _snip(body))
    return await call_next(request)


# ---------- Capability statement ----------
CAPABILITY_STATEMENT: Dict[str, Any] = {
    "resourceType": "CapabilityStatement",
    "title": "FHIRPath Lab Python expression evaluator (fhirpathpy)",
    "status": "active",
    "date": "2026-01-01",
    "kind": "instance",
    "fhirVersion": "4.0.1",
    "format": [FHIR_JSON],
    "implementationGuide": SUPPORTED_VERSIONS,
    "rest": [
        {
            "mode": "server",
            "security": {"cors": True},
            "operation": [
                {"name": "fhirpath", "definition": "http://fhirpath-lab.org/OperationDefinition/fhirpath"},
            ],
        }
    ],
}


@app.get("/api/metadata", tags=["Utils"], summary="CapabilityStatement", response_class=FhirJSONResponse)
def capability_statement():
    """Static CapabilityStatement advertising the `fhirpath` operation."""
    return FhirJSONResponse(CAPABILITY_STATEMENT)


# ---------- $fhirpath ----------
async def _read_request(request: Request, fhir_version: str) -> FhirPathRequest:
    if request.method == "POST":
        parameters = parameters_from_body(await request.body())
    else:
        parameters = parameters_from_query(request.query_params.multi_items())
    return request_from_parameters(parameters, fhir_version)


def _evaluate(fhir_request: FhirPathRequest) -> Dict[str, Any]:
    if fhir_request.resource is None and is_remote(fhir_request.resource_id):
        fhir_request.resource = load_remote_resource(fhir_request.resource_id)
    return service.process_request(fhir_request)


async def _process_fhirpath(request: Request, fhir_version: str) -> FhirJSONResponse:
    log.info("FhirPath Expression Evaluation (fhirpathpy) - FHIR %s", fhir_version)
    try:
        fhir_request = await _read_request(request, fhir_version)
    except InvalidRequestError as e:
        log.warning("Rejected $fhirpath request: %s", e)
        return _error_response(str(e))

    try:
        result = await run_in_threadpool(_evaluate, fhir_request)
    except RemoteResourceError as e:
        return _error_response(str(e), code="not-found", diagnostics=e.url)
    except Exception as e:
        log.exception("Unhandled error evaluating %r", fhir_request.expression)
        return _error_response(f"Unexpected error: {e}", code="exception", status_code=500)
    return FhirJSONResponse(result)


@app.api_route("/api/$fhirpath", methods=["GET", "POST"], tags=["FHIRPath"],
               summary="Evaluate FHIRPath (default version)", response_class=FhirJSONResponse)
async def fhirpath_default(request: Request):
    return await _process_fhirpath(request, DEFAULT_FHIR_VERSION)


@app.api_route("/api/$fhirpath-stu3", methods=["GET", "POST"], tags=["FHIRPath"],
               summary="Evaluate FHIRPath (STU3)", response_class=FhirJSONResponse)
async def fhirpath_stu3(request: Request):
    return await _process_fhirpath(request, "STU3")


@app.api_route("/api/$fhirpath-r4b", methods=["GET", "POST"], tags=["FHIRPath"],
               summary="Evaluate FHIRPath (R4B)", response_class=FhirJSONResponse)
async def fhirpath_r4b(request: Request):
    return await _process_fhirpath(request, "R4B")


@app.api_route("/api/$fhirpath-r5", methods=["GET", "POST"], tags=["FHIRPath"],
               summary="Evaluate FHIRPath (R5)", response_class=FhirJSONResponse)
async def fhirpath_r5(request: Request):
    return await _process_fhirpath(request, "R5")


@app.api_route("/api/$fhirpath-r6", methods=["GET", "POST"], tags=["FHIRPath"],
               summary="Evaluate FHIRPath (R6)", response_class=FhirJSONResponse)
async def fhirpath_r6(request: Request):
    return await _process_fhirpath(request, "R6")


# ---------- Homepage ----------
@app.get("/", include_in_schema=False)
def home() -> HTMLResponse:
    """Short landing page with links to the operation routes."""
    html = f"""
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <title>{SERVICE_NAME}</title>
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <style>
    body {{ font-family: system-ui, -apple-system, Segoe UI, Roboto, sans-serif; margin: 2rem; line-height: 1.5; }}
    table {{ border-collapse: collapse; width: 100%; max-width: 900px; }}
    th, td {{ border: 1px solid #ddd; padding: .5rem .75rem; vertical-align: top; }}
    th {{ background: #f7f7f7; text-align: left; }}
    code {{ background: #f6f8fa; padding: 0 .25rem; border-radius: 3px; }}
    .links a {{ margin-right: 1rem; }}
  </style>
</head>
<body>
  <h1>{SERVICE_NAME}</h1>
  <p>FHIRPath evaluation backend for <a href="https://fhirpath-lab.com">fhirpath-lab</a>, powered by fhirpathpy {engine_version()}.</p>
  <p class="links">
    <a href="/docs">Swagger UI</a>
    <a href="/openapi.yaml">OpenAPI (YAML)</a>
    <a href="/api/metadata">/api/metadata</a>
    <a href="/health">/health</a>
  </p>
  <table>
    <thead><tr><th>Endpoint</th><th>Method</th><th>FHIR version</th></tr></thead>
    <tbody>
      <tr><td><code>/api/$fhirpath</code></td><td>GET, POST</td><td>{DEFAULT_FHIR_VERSION}</td></tr>
      <tr><td><code>/api/$fhirpath-stu3</code></td><td>GET, POST</td><td>STU3</td></tr>
      <tr><td><code>/api/$fhirpath-r4b</code></td><td>GET, POST</td><td>R4B</td></tr>
      <tr><td><code>/api/$fhirpath-r5</code></td><td>GET, POST</td><td>R5</td></tr>
      <tr><td><code>/api/$fhirpath-r6</code></td><td>GET, POST</td><td>R6</td></tr>
    </tbody>
  </table>
</body>
</html>
"""
    return HTMLResponse(html)


@app.get("/health", tags=["Utils"], summary="Liveness probe")
def health():
    """Return a simple liveness payload with the service and engine versions."""
    return {"status": "ok", "version": SERVICE_VERSION, "engine": f"fhirpathpy-{engine_version()}"}


# ---------- OpenAPI as YAML (auto-generated) ----------
@app.get("/openapi.yaml", include_in_schema=False)
def openapi_yaml():
    """Return the auto-generated OpenAPI schema as YAML."""
    schema = app.openapi()
    return PlainTextResponse(yaml.safe_dump(schema, sort_keys=False), media_type="application/yaml")


def run():
    uvicorn.run(app, host=HOST, port=PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
