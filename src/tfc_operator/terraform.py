"""Configuration text for module-backed workspaces.

The rendered text wraps the declared module in a root configuration that
uses the remote backend for the workspace, declares one input per
Terraform variable, and re-exports the requested module outputs. Output is
deterministic: equal specs render byte-identical text, so comparing stored
text detects configuration drift.
"""

from __future__ import annotations

import logging
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .models import WorkspaceResource
from .store import KeyValueStore

logger = logging.getLogger(__name__)

# Key holding the configuration text inside a config store entry
CONFIG_KEY = "terraform"
MODULE_NAME = "operator"
TEMPLATE_DIR = Path(__file__).parent / "templates"
CONFIGURATION_TEMPLATE = "main.tf.j2"

_environment = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=False,
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
)


def render_configuration(resource: WorkspaceResource) -> str:
    """Render the root configuration for a module-backed workspace.

    Raises:
        ValueError: If the workspace does not declare a module.
    """
    spec = resource.spec
    if spec.module is None:
        raise ValueError(f"Workspace {resource.key} has no module to render")

    template = _environment.get_template(CONFIGURATION_TEMPLATE)
    return template.render(
        organization=spec.organization,
        workspace_name=resource.workspace_name,
        module_name=MODULE_NAME,
        module=spec.module,
        inputs=[v.key for v in spec.variables if not v.environment_variable],
        outputs=spec.outputs,
    )


class ConfigStore:
    """Stores the last rendered configuration text per workspace."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def get(self, namespace: str, name: str) -> str | None:
        data = self._store.get(namespace, name)
        if data is None:
            return None
        return data.get(CONFIG_KEY)

    def upsert(self, namespace: str, name: str, text: str) -> bool:
        """Store configuration text.

        Returns:
            True if the entry was created or its text changed.
        """
        current = self.get(namespace, name)
        if current == text:
            return False

        self._store.put(namespace, name, {CONFIG_KEY: text})
        logger.info(
            "Stored configuration text",
            extra={
                "namespace": namespace,
                "name": name,
                "created": current is None,
            },
        )
        return True
