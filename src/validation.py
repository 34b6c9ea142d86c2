"""
Document Validation - JSON Schema validation of desired-address documents.

A desired-address document lists the rules an operator wants on the router:

    addresses:
      - name: media-plex
        port: 32400
        ip: 192.168.1.20
        source_range: 10.0.0.0/8   # optional
        options: {site: home}      # optional
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

from forwarding.address import MAX_PORT, MIN_PORT, Address, ScopeKey

logger = logging.getLogger(__name__)

ADDRESS_DOCUMENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["addresses"],
    "properties": {
        "addresses": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "port", "ip"],
                "additionalProperties": False,
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "port": {
                        "type": "integer",
                        "minimum": MIN_PORT,
                        "maximum": MAX_PORT,
                    },
                    "ip": {
                        "type": "string",
                        "anyOf": [{"format": "ipv4"}, {"format": "ipv6"}],
                    },
                    "source_range": {"type": "string"},
                    "options": {
                        "type": "object",
                        "additionalProperties": {"type": "string"},
                    },
                },
            },
        }
    },
}


def validate_document(
    document: Any, schema: Optional[Dict[str, Any]] = None
) -> Tuple[bool, Optional[str]]:
    """
    Validate a desired-address document against its JSON Schema.

    Args:
        document: The parsed YAML/JSON document
        schema: Schema to validate against (defaults to ADDRESS_DOCUMENT_SCHEMA)

    Returns:
        Tuple of (is_valid, error_message)
    """
    schema = schema or ADDRESS_DOCUMENT_SCHEMA
    try:
        validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
        errors = list(validator.iter_errors(document))

        if not errors:
            return True, None

        # Collect all validation errors
        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"


def load_addresses(document: Dict[str, Any]) -> List[Address]:
    """
    Build Addresses from a desired-address document.

    Raises:
        ValueError: If the document does not match the schema.
    """
    is_valid, error = validate_document(document)
    if not is_valid:
        raise ValueError(f"Invalid address document: {error}")

    addresses = [
        Address(
            name=entry["name"],
            port=entry["port"],
            ip=entry["ip"],
            source_range=entry.get("source_range", ""),
            options=ScopeKey.from_mapping(entry.get("options")),
        )
        for entry in document["addresses"]
    ]
    logger.debug(f"Loaded {len(addresses)} addresses from document")
    return addresses
