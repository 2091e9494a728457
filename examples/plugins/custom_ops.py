"""
Example plugin module for Marionette.

Drop this file into a plugin directory (see plugin_dirs in main.conf) or make it
importable (plugin_modules) and it will register a new operation called
`say_hello` that reports a greeting without making system changes.
"""

from marionette_automation.operations.base import Operation
from marionette_automation.types import HostConfig


class SayHelloOperation(Operation):
    # Reporting only, so the host is never "changed".
    mutates_host = False
    always_run = True

    def __init__(self, spec: dict):
        super().__init__(spec)
        self.message = spec.get("message", "hello")

    def apply(self, host: HostConfig, executor) -> str:
        self.output = f"{self.message} from {host.name}"
        self.published["greeting"] = self.message
        return f"greeting: {self.message}"


def register_operations(registry) -> None:
    registry["say_hello"] = SayHelloOperation
