"""
Attribute schemas for the AWS resource types of a load-balanced
auto-scaling web tier.
"""
from typing import Dict, List

from converge.providers.base import ResourceSchema

# Arguments the AWS API cannot change on an existing object
FORCE_NEW: Dict[str, List[str]] = {
    "aws_lb":                ["name", "name_prefix", "internal", "load_balancer_type"],
    "aws_lb_target_group":   ["name", "name_prefix", "port", "protocol", "vpc_id", "target_type"],
    "aws_lb_listener":       ["load_balancer_arn"],
    "aws_security_group":    ["name", "name_prefix", "description", "vpc_id"],
    "aws_launch_template":   ["name", "name_prefix"],
    "aws_autoscaling_group": ["name", "name_prefix"],
}

# Values the API assigns on create
COMPUTED: Dict[str, List[str]] = {
    "aws_lb":                ["id", "arn", "arn_suffix", "dns_name", "zone_id"],
    "aws_lb_target_group":   ["id", "arn", "arn_suffix"],
    "aws_lb_listener":       ["id", "arn"],
    "aws_security_group":    ["id", "arn", "owner_id"],
    "aws_launch_template":   ["id", "arn", "latest_version", "default_version"],
    "aws_autoscaling_group": ["id", "arn"],
}


def schema_for(resource_type: str) -> ResourceSchema:
    if resource_type not in FORCE_NEW and resource_type not in COMPUTED:
        return ResourceSchema(resource_type)
    return ResourceSchema(
        resource_type=resource_type,
        force_new=frozenset(FORCE_NEW.get(resource_type, ())),
        computed=frozenset(COMPUTED.get(resource_type, ("id", "arn"))),
    )
