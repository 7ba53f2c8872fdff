"""PlaybookVisualizer - renders playbooks as Mermaid flowcharts."""

import re
from pathlib import Path
from typing import Dict, List, Optional, Set

from .models import ConditionalBranchStep, OnFailure, RemediationPlaybook, StepBase, StepType

_SHAPES = {
    StepType.CONDITIONAL_BRANCH: ("{", "}"),
    StepType.APPROVAL_REQUIRED: ("[/", "/]"),
    StepType.MANUAL_STEP: ("[\\", "\\]"),
    StepType.NOTIFICATION: ("([", "])"),
    StepType.ROLLBACK_STEP: ("[[", "]]"),
}

# Characters that would close a Mermaid node shape early
_LABEL_TABLE = str.maketrans({'"': "'", "[": "(", "]": ")", "{": "(", "}": ")"})

_CONDITION_OPERATORS = ((" == ", "="), (" and ", " & "), (" or ", " | "))

MAX_CONDITION_LABEL = 40


def _label(text: str) -> str:
    return text.translate(_LABEL_TABLE)


def _condition_label(condition: str) -> str:
    text = condition.strip()
    if text.startswith("{{") and text.endswith("}}"):
        text = text[2:-2].strip()
    for operator, symbol in _CONDITION_OPERATORS:
        text = text.replace(operator, symbol)
    if len(text) > MAX_CONDITION_LABEL:
        text = text[: MAX_CONDITION_LABEL - 3] + "..."
    return _label(text)


class PlaybookVisualizer:
    """
    Draws a remediation playbook as a Mermaid flowchart.

    Steps become nodes and dependencies become edges, so steps of the same
    wave appear side by side. Conditional branches label their outgoing
    edges with the condition outcome. The rollback plan is drawn as a
    separate subgraph reached from every step with ``on_failure: rollback``.

    Example:
        playbook = PlaybookLoader().load_from_file("scenarios/db_connection.yaml")
        print(PlaybookVisualizer().to_mermaid(playbook, direction="LR"))
    """

    def __init__(self) -> None:
        self._taken: Set[str] = set()
        self._node_for: Dict[str, str] = {}

    def to_mermaid(
        self,
        playbook: RemediationPlaybook,
        show_variables: bool = False,
        direction: str = "TD",
    ) -> str:
        """
        Render a playbook as Mermaid flowchart source.

        Args:
            playbook: Playbook to draw
            show_variables: Append each step's ``output_var`` to its label
            direction: ``TD`` (top-down) or ``LR`` (left-right)

        Returns:
            The flowchart source
        """
        self._taken = {"Start", "End"}
        self._node_for = {step.id: self._allocate(step.id) for step in playbook.steps}

        lines: List[str] = [
            f"flowchart {direction}",
            f"    %% Playbook: {playbook.name} v{playbook.version}",
        ]
        if playbook.description:
            lines.append(f"    %% {playbook.description}")
        lines += ["", "    Start([Start])"]
        lines += [f"    {self._node(step, show_variables)}" for step in playbook.steps]
        lines += self._edges(playbook)
        lines.append("    End([End])")

        if playbook.rollback_plan:
            lines += self._rollback_lines(playbook, show_variables)

        return "\n".join(lines)

    def _edges(self, playbook: RemediationPlaybook) -> List[str]:
        branch_label: Dict[tuple, str] = {}
        for step in playbook.steps:
            if isinstance(step, ConditionalBranchStep):
                for outcome, target in (
                    ("true", step.config.true_step),
                    ("false", step.config.false_step),
                ):
                    if target:
                        branch_label[(step.id, target)] = outcome

        edges: List[str] = []
        for step in playbook.steps:
            target = self._node_for[step.id]
            if not step.dependencies:
                edges.append(f"    Start --> {target}")
            for dep in step.dependencies:
                source = self._node_for.get(dep, dep)
                outcome = branch_label.get((dep, step.id))
                arrow = f"-->|{outcome}|" if outcome else "-->"
                edges.append(f"    {source} {arrow} {target}")

        has_dependents = {dep for step in playbook.steps for dep in step.dependencies}
        edges += [
            f"    {self._node_for[step.id]} --> End"
            for step in playbook.steps
            if step.id not in has_dependents
        ]
        return edges

    def _rollback_lines(
        self, playbook: RemediationPlaybook, show_variables: bool
    ) -> List[str]:
        node_ids = [self._allocate(f"rollback_{step.id}") for step in playbook.rollback_plan]

        lines = ["", "    subgraph Rollback[Rollback plan]"]
        for index, step in enumerate(playbook.rollback_plan):
            lines.append(f"        {self._node(step, show_variables, node_ids[index])}")
            if index:
                lines.append(f"        {node_ids[index - 1]} --> {node_ids[index]}")
        lines.append("    end")

        lines += [
            f"    {self._node_for[step.id]} -.->|failure| {node_ids[0]}"
            for step in playbook.steps
            if step.on_failure == OnFailure.ROLLBACK
        ]
        return lines

    def _node(self, step: StepBase, show_variables: bool, node_id: str = "") -> str:
        if isinstance(step, ConditionalBranchStep):
            text = _condition_label(step.config.condition)
        else:
            text = _label(step.name)
        if show_variables and step.output_var:
            text += f"\\n-> {step.output_var}"
        opening, closing = _SHAPES.get(step.step_type, ("[", "]"))
        return f"{node_id or self._node_for[step.id]}{opening}{text}{closing}"

    def _allocate(self, step_id: str) -> str:
        """Turn a step id into a Mermaid-safe node id not used yet in this diagram."""
        base = re.sub(r"\W", "", re.sub(r"[\s-]", "_", step_id))
        candidate, suffix = base, 0
        while candidate in self._taken:
            suffix += 1
            candidate = f"{base}_{suffix}"
        self._taken.add(candidate)
        return candidate

    def save_diagram(
        self,
        playbook: RemediationPlaybook,
        output_path: str,
        show_variables: bool = False,
        direction: str = "TD",
    ) -> None:
        """
        Write the diagram to ``output_path``.

        A ``.md`` file gets a title, the description and a fenced mermaid
        block; any other suffix gets the raw flowchart source.
        """
        diagram = self.to_mermaid(playbook, show_variables, direction)
        path = Path(output_path)

        if path.suffix != ".md":
            path.write_text(diagram, encoding="utf-8")
            return

        parts = [f"# {playbook.name}\n\n"]
        if playbook.description:
            parts.append(f"{playbook.description}\n\n")
        parts.append(f"```mermaid\n{diagram}\n```\n")
        path.write_text("".join(parts), encoding="utf-8")


def main(argv: Optional[List[str]] = None) -> None:
    """Console entry point: ``playbook-visualize FILE [-o OUT]``."""
    import argparse
    import sys

    from .loader import PlaybookLoader
    from .logging_config import setup_logging_from_settings
    from .settings import EngineSettings

    parser = argparse.ArgumentParser(
        description="Draw a remediation playbook as a Mermaid flowchart"
    )
    parser.add_argument("playbook", help="Playbook YAML file")
    parser.add_argument("-o", "--output", default=None, help="Write to a .md or .mmd file")
    parser.add_argument("--direction", choices=["TD", "LR"], default="TD")
    parser.add_argument(
        "--show-variables", action="store_true", help="Annotate steps with output_var"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override PLAYBOOK_LOG_LEVEL",
    )
    args = parser.parse_args(argv)
    setup_logging_from_settings(EngineSettings(), args.log_level, stream=sys.stderr)

    try:
        playbook = PlaybookLoader().load_from_file(args.playbook)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    visualizer = PlaybookVisualizer()
    if args.output is None:
        print(visualizer.to_mermaid(playbook, args.show_variables, args.direction))
        return

    visualizer.save_diagram(playbook, args.output, args.show_variables, args.direction)
    print(f"Wrote {args.output}")


if __name__ == "__main__":
    main()
