"""Shared fixtures for the fhirpath_lab test suite."""

import copy

import pytest

from fhirpath_lab.schema import SchemaProvider

PATIENT = {
    "resourceType": "Patient",
    "id": "test-patient",
    "contained": [
        {"resourceType": "Practitioner", "id": "gp", "name": [{"family": "Jones"}]},
    ],
    "name": [
        {"use": "official", "family": "Smith", "given": ["John", "James"]},
        {"use": "usual", "given": ["Johnny"]},
    ],
    "contact": [
        {"name": {"family": "Smith", "given": ["Jane"]}},
    ],
    "generalPractitioner": [{"reference": "#gp"}],
    "managingOrganization": {"reference": "Organization/org-1"},
    "birthDate": "1990-01-15",
    "active": True,
}

# A small slice of the fhirpathpy model tables, enough for type analysis.
MODEL = {
    "path2Type": {
        "Resource.id": "System.String",
        "DomainResource.contained": "Resource",
        "Patient.name": "HumanName",
        "Patient.birthDate": "date",
        "Patient.active": "boolean",
        "Patient.contact": "BackboneElement",
        "Patient.contact.name": "HumanName",
        "Patient.generalPractitioner": "Reference",
        "Patient.managingOrganization": "Reference",
        "HumanName.use": "code",
        "HumanName.family": "string",
        "HumanName.given": "string",
        "Reference.reference": "string",
        "Observation.status": "code",
        "Observation.component.code": "CodeableConcept",
    },
    "choiceTypePaths": {
        "Observation.value": ["Quantity", "string", "CodeableConcept"],
        "Observation.component.value": ["Quantity", "string"],
    },
    "pathsDefinedElsewhere": {},
    "type2Parent": {
        "Patient": "DomainResource",
        "Observation": "DomainResource",
        "Practitioner": "DomainResource",
        "DomainResource": "Resource",
        "HumanName": "Element",
        "Reference": "Element",
        "Quantity": "Element",
        "CodeableConcept": "Element",
        "BackboneElement": "Element",
    },
}


@pytest.fixture
def patient():
    return copy.deepcopy(PATIENT)


@pytest.fixture
def schema():
    return SchemaProvider(MODEL, "test")


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from fhirpath_lab.main import app

    return TestClient(app)


@pytest.fixture
def observation():
    return {
        "resourceType": "Observation",
        "id": "bp",
        "status": "final",
        "component": [
            {"code": {"text": "systolic"}, "valueQuantity": {"value": 120, "unit": "mmHg",
                                                              "system": "http://unitsofmeasure.org", "code": "mm[Hg]"}},
            {"code": {"text": "note"}, "valueString": "seated"},
        ],
    }
