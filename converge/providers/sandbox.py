"""
Sandbox provider: a simulated AWS account.

Objects live in memory and, when a path is given, in a JSON file so that
separate CLI invocations see the same account. Failures can be scripted
per resource type and method.
"""
import json
import os
import threading
import time
from typing import Any, Dict, List, Optional, Tuple, Type

from converge.errors import APIError, PermanentAPIError
from converge.models.change import UNKNOWN
from converge.providers import aws
from converge.providers.base import Provider, RemoteObject, ResourceSchema

_ID_PREFIX = {
    "aws_lb":                "lb",
    "aws_lb_target_group":   "tg",
    "aws_lb_listener":       "lst",
    "aws_security_group":    "sg",
    "aws_launch_template":   "lt",
    "aws_autoscaling_group": "asg",
}


class SandboxProvider(Provider):
    name = "sandbox"

    def __init__(self, path: Optional[str] = None, latency: float = 0.0, schema_overrides=None):
        super().__init__(schema_overrides)
        self.path = path
        self.latency = latency
        self.calls: List[Tuple[str, str, str]] = []
        self.max_in_flight = 0
        self._in_flight = 0
        self._lock = threading.Lock()
        self._faults: List[Dict[str, Any]] = []
        self._objects: Dict[str, Dict[str, Any]] = {}
        self._counter = 0
        if path and os.path.exists(path):
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
            self._objects = data.get("objects", {})
            self._counter = int(data.get("counter", 0))

    def base_schema(self, resource_type: str) -> ResourceSchema:
        return aws.schema_for(resource_type)

    # ------------------------------------------------------------ scripting
    def inject(
        self,
        resource_type: str,
        method: str,
        error: Type[APIError],
        times: Optional[int] = 1,
        message: str = "injected failure",
    ) -> None:
        """Make the next ``times`` calls of ``method`` on ``resource_type`` fail (None = always)."""
        self._faults.append({
            "resource_type": resource_type,
            "method": method,
            "error": error,
            "times": times,
            "message": message,
        })

    def objects(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return json.loads(json.dumps(self._objects))

    def tamper(self, remote_id: str, **attributes: Any) -> None:
        """Change a remote object behind converge's back."""
        with self._lock:
            self._objects[remote_id]["attributes"].update(attributes)
            self._save()

    def forget(self, remote_id: str) -> None:
        with self._lock:
            self._objects.pop(remote_id, None)
            self._save()

    # ------------------------------------------------------------ internals
    def _enter(self, method: str, resource_type: str, remote_id: str = "") -> None:
        with self._lock:
            self.calls.append((method, resource_type, remote_id))
            for fault in self._faults:
                if fault["resource_type"] == resource_type and fault["method"] == method:
                    if fault["times"] is not None:
                        if fault["times"] <= 0:
                            continue
                        fault["times"] -= 1
                    raise fault["error"](f"{fault['message']}: {method} {resource_type}")
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        if self.latency:
            time.sleep(self.latency)

    def _leave(self) -> None:
        with self._lock:
            self._in_flight -= 1

    def _save(self) -> None:
        if not self.path:
            return
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8", newline="\n") as fh:
            json.dump({"counter": self._counter, "objects": self._objects}, fh, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    @staticmethod
    def _validate(resource_type: str, attributes: Dict[str, Any]) -> None:
        for key, value in attributes.items():
            if value is UNKNOWN:
                raise PermanentAPIError(f"{resource_type}: attribute '{key}' has no value", code="ValidationError")

    def _outputs(self, resource_type: str, remote_id: str, attributes: Dict[str, Any], version: int) -> Dict[str, Any]:
        arn = f"arn:aws:sandbox:us-east-1:000000000000:{resource_type}/{remote_id}"
        out: Dict[str, Any] = {"id": remote_id, "arn": arn}
        computed = self.schema(resource_type).computed
        if "arn_suffix" in computed:
            out["arn_suffix"] = remote_id
        if "dns_name" in computed:
            out["dns_name"] = f"{attributes.get('name') or remote_id}.elb.sandbox.internal"
        if "zone_id" in computed:
            out["zone_id"] = "ZSANDBOX000001"
        if "owner_id" in computed:
            out["owner_id"] = "000000000000"
        if "latest_version" in computed:
            out["latest_version"] = version
            out["default_version"] = 1
        return out

    # ------------------------------------------------------------ capability interface
    def create(self, resource_type: str, attributes: Dict[str, Any]) -> RemoteObject:
        self._enter("create", resource_type)
        try:
            self._validate(resource_type, attributes)
            with self._lock:
                self._counter += 1
                remote_id = f"{_ID_PREFIX.get(resource_type, 'res')}-{self._counter:08x}"
                outputs = self._outputs(resource_type, remote_id, attributes, 1)
                self._objects[remote_id] = {
                    "type": resource_type,
                    "attributes": dict(attributes),
                    "outputs": outputs,
                    "version": 1,
                }
                self._save()
            return RemoteObject(remote_id, dict(attributes), dict(outputs))
        finally:
            self._leave()

    def read(self, resource_type: str, remote_id: str) -> Optional[RemoteObject]:
        self._enter("read", resource_type, remote_id)
        try:
            with self._lock:
                obj = self._objects.get(remote_id)
                if obj is None:
                    return None
                return RemoteObject(remote_id, dict(obj["attributes"]), dict(obj["outputs"]))
        finally:
            self._leave()

    def update(self, resource_type: str, remote_id: str, attributes: Dict[str, Any]) -> RemoteObject:
        self._enter("update", resource_type, remote_id)
        try:
            self._validate(resource_type, attributes)
            with self._lock:
                obj = self._objects.get(remote_id)
                if obj is None:
                    raise PermanentAPIError(f"{resource_type} {remote_id} not found", code="NotFound")
                obj["version"] += 1
                obj["attributes"] = dict(attributes)
                obj["outputs"] = self._outputs(resource_type, remote_id, attributes, obj["version"])
                self._save()
                return RemoteObject(remote_id, dict(attributes), dict(obj["outputs"]))
        finally:
            self._leave()

    def delete(self, resource_type: str, remote_id: str) -> None:
        self._enter("delete", resource_type, remote_id)
        try:
            with self._lock:
                # deleting something already gone is not an error
                self._objects.pop(remote_id, None)
                self._save()
        finally:
            self._leave()
