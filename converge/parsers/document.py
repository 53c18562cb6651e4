"""
Terraform JSON syntax (``*.tf.json``) and YAML/JSON desired-state documents.

Both use the Terraform JSON layout::

    resource:
      aws_lb:
        web:
          internal: false
          security_groups: ["${aws_security_group.lb.id}"]
    variable:
      env: {default: dev}
    output:
      lb_dns: {value: "${aws_lb.web.dns_name}"}
"""
import json
import os

import yaml

from converge.errors import ParseError
from converge.models.resource import Configuration
from converge.parsers.terraform import from_mapping

def parse_file(filepath: str) -> Configuration:
    _, ext = os.path.splitext(filepath.lower())
    try:
        with open(filepath) as fh:
            if ext == ".json":
                data = json.load(fh)
            else:
                data = yaml.safe_load(fh)
    except OSError as exc:
        raise ParseError(filepath, str(exc)) from exc
    except (ValueError, yaml.YAMLError) as exc:
        raise ParseError(filepath, f"invalid document: {exc}") from exc

    if data is None:
        return Configuration()
    return from_mapping(data, filepath)

