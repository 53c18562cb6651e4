import json
import os

import yaml


def _is_document(data: object) -> bool:
    return isinstance(data, dict) and isinstance(data.get("resource"), (dict, list))


def detect_format(filepath: str) -> str:
    """
    Return 'terraform', 'terraform-json', 'document', or 'unknown'.
    """
    lowered = filepath.lower()
    if lowered.endswith(".tf.json"):
        return "terraform-json"

    _, ext = os.path.splitext(lowered)

    if ext == ".tf":
        return "terraform"

    if ext == ".json":
        try:
            with open(filepath) as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            return "unknown"
        return "document" if _is_document(data) else "unknown"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath) as fh:
                data = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError):
            return "unknown"
        return "document" if _is_document(data) else "unknown"

    return "unknown"
