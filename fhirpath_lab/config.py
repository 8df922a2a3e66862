import os

from fhirpath_lab import __version__

# ---------- Config ----------
SERVICE_NAME = "FHIRPath Lab (fhirpathpy)"
SERVICE_VERSION = os.getenv("SERVICE_VERSION", __version__)

LOG_LEVEL = os.getenv("FHIRPATH_LAB_LOG", "INFO").upper()
LOG_BODY_LIMIT = int(os.getenv("FHIRPATH_LAB_LOG_BODY_LIMIT", "4000"))  # bytes shown

DEFAULT_FHIR_VERSION = os.getenv("FHIRPATH_LAB_DEFAULT_VERSION", "R4").upper()
REMOTE_TIMEOUT = int(os.getenv("FHIRPATH_LAB_REMOTE_TIMEOUT", "30"))

CORS_ORIGINS = [o.strip() for o in os.getenv("FHIRPATH_LAB_CORS_ORIGINS", "*").split(",") if o.strip()]

HOST = os.getenv("FHIRPATH_LAB_HOST", "0.0.0.0")
PORT = int(os.getenv("FHIRPATH_LAB_PORT", "7071"))

FHIR_JSON = "application/fhir+json"

EXTENSION_URL_JSON_VALUE = "http://fhir.forms-lab.com/StructureDefinition/json-value"
EXTENSION_URL_RESOURCE_PATH = "http://fhir.forms-lab.com/StructureDefinition/resource-path"
