"""Built-in playbook templates for common remediation scenarios."""

import logging
from pathlib import Path
from typing import List, Optional

from .errors import PlaybookNotFoundError
from .loader import PlaybookLoader
from .models import RemediationPlaybook
from .registry import PlaybookRegistry

logger = logging.getLogger(__name__)

SCENARIO_DIR = Path(__file__).parent / "scenarios"


def list_templates() -> List[str]:
    """Names of the bundled scenarios."""
    return sorted(path.stem for path in SCENARIO_DIR.glob("*.yaml"))


def load_template(scenario: str) -> RemediationPlaybook:
    """
    Load a bundled scenario as an unregistered playbook.

    Raises:
        PlaybookNotFoundError: If no scenario has that name
    """
    path = SCENARIO_DIR / f"{scenario}.yaml"
    if not path.is_file():
        raise PlaybookNotFoundError(scenario)
    return PlaybookLoader().load_from_file(path)


def create_template_playbook(
    registry: PlaybookRegistry, scenario: str, created_by: Optional[str] = None
) -> RemediationPlaybook:
    """
    Register a new playbook from a bundled scenario.

    Args:
        registry: Registry the playbook is created in
        scenario: Scenario name, e.g. ``database_connection_issue``
        created_by: Creator recorded on the playbook (``system`` by default)

    Returns:
        The stored playbook with a fresh id
    """
    template = load_template(scenario)
    playbook = registry.create(template, created_by=created_by or "system")
    logger.info("Created playbook %s from template '%s'", playbook.id, scenario)
    return playbook
