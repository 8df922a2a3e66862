"""
Reading `$fhirpath` operation input: FHIR Parameters from a POST body or a
query string, and remote resources referenced by URL.
"""

import json
import logging
from typing import Any, Dict, Iterable, Optional, Tuple

import requests

from fhirpath_lab.config import FHIR_JSON, LOG_BODY_LIMIT, REMOTE_TIMEOUT
from fhirpath_lab.models import FhirPathRequest

log = logging.getLogger(__name__)


class InvalidRequestError(ValueError):
    """The request body is not a FHIR Parameters resource."""


class RemoteResourceError(Exception):
    """A resource given by URL could not be retrieved."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Unable to retrieve resource {url}: {reason}")
        self.url = url


# ---------- Parameters ----------
def parameters_from_query(query_items: Iterable[Tuple[str, str]]) -> Dict[str, Any]:
    """Every query key becomes a `valueString` parameter (the last value wins for repeated keys)."""
    params: Dict[str, Dict[str, Any]] = {}
    for key, value in query_items:
        params[key] = {"name": key, "valueString": value}
    return {"resourceType": "Parameters", "parameter": list(params.values())}


def parameters_from_body(body: bytes) -> Dict[str, Any]:
    if not body:
        raise InvalidRequestError("Request body is empty")
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidRequestError(f"Request body is not valid JSON: {e}") from e
    if not isinstance(data, dict) or data.get("resourceType") != "Parameters":
        found = data.get("resourceType") if isinstance(data, dict) else type(data).__name__
        raise InvalidRequestError(f"Expected a Parameters resource, got {found}")
    parameter = data.get("parameter", [])
    if not isinstance(parameter, list):
        raise InvalidRequestError("Parameters.parameter must be an array")
    return data


def find_parameter(parameters: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    for p in parameters.get("parameter") or []:
        if isinstance(p, dict) and p.get("name") == name:
            return p
    return None


def parameter_value(param: Optional[Dict[str, Any]]) -> Any:
    """Value of the first `value[x]` element of a parameter."""
    if not param:
        return None
    for key, value in param.items():
        if key.startswith("value") and len(key) > 5 and key[5].isupper():
            return value
    return None


def parameter_bool(param: Optional[Dict[str, Any]]) -> bool:
    value = parameter_value(param)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _parameter_string(param: Optional[Dict[str, Any]]) -> Optional[str]:
    value = parameter_value(param)
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def request_from_parameters(parameters: Dict[str, Any], fhir_version: str) -> FhirPathRequest:
    resource_param = find_parameter(parameters, "resource")
    resource = resource_param.get("resource") if resource_param else None
    resource_id = None if isinstance(resource, dict) else _parameter_string(resource_param)

    return FhirPathRequest(
        resource=resource if isinstance(resource, dict) else None,
        resource_id=resource_id or None,
        context=_parameter_string(find_parameter(parameters, "context")) or None,
        expression=_parameter_string(find_parameter(parameters, "expression")) or "",
        terminology_server_url=_parameter_string(find_parameter(parameters, "terminologyserver")) or None,
        variables=find_parameter(parameters, "variables"),
        debug_trace=parameter_bool(find_parameter(parameters, "debug_trace")),
        fhir_version=fhir_version,
    )


# ---------- Remote resources ----------
def is_remote(resource_id: Optional[str]) -> bool:
    return bool(resource_id) and resource_id.lower().startswith("http")


def load_remote_resource(url: str, *, timeout: int = REMOTE_TIMEOUT) -> Dict[str, Any]:
    """GET a FHIR resource as JSON; any failure raises RemoteResourceError."""
    log.info("Fetching resource %s", url)
    try:
        resp = requests.get(url, headers={"Accept": FHIR_JSON}, timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
    except requests.RequestException as e:
        log.warning("Unable to retrieve resource %s: %s", url, e)
        raise RemoteResourceError(url, str(e)) from e
    except ValueError as e:
        log.warning("Resource at %s is not JSON: %s", url, str(e)[:LOG_BODY_LIMIT])
        raise RemoteResourceError(url, "response is not JSON") from e

    if not isinstance(data, dict) or not data.get("resourceType"):
        raise RemoteResourceError(url, "response is not a FHIR resource")
    return data
