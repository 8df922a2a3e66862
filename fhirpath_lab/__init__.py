"""FHIRPath Lab evaluator service backed by fhirpathpy."""

__version__ = "1.0.0"
