"""Step graph built and validated when a preset is loaded.

Steps live in an arena (the declared list) addressed through an id
index. Edges:

- sequential: each main-flow step to the next main-flow step
- jump: ``if`` steps to their ``then`` / ``else`` targets
- child: ``parallel`` to each member, ``forEach`` / ``while`` to a body
  referenced by id

Child steps only run inside their parent, so they are removed from the
main flow. Every problem found is reported in one ``ValidationError``.
"""

from dataclasses import dataclass, field
from typing import Any, Collection, Optional

from pydantic import ValidationError as PydanticValidationError

from core.constants import FLOW_ONLY_ACTIONS
from core.exceptions import ValidationError

LOOP_ACTIONS = ("forEach", "while")

# Required params per control action
_REQUIRED_PARAMS = {
    "forEach": ("items", "step"),
    "while": ("condition", "step"),
}


@dataclass
class StepGraph:
    """Validated control-flow graph of one preset."""

    steps: list = field(default_factory=list)
    index: dict[str, int] = field(default_factory=dict)
    main_flow: list[str] = field(default_factory=list)
    children: dict[str, str] = field(default_factory=dict)
    bodies: dict[str, Any] = field(default_factory=dict)
    edges: dict[str, list[str]] = field(default_factory=dict)

    # ─── Queries ──────────────────────────────────────────────

    @property
    def entry(self) -> Optional[str]:
        return self.main_flow[0] if self.main_flow else None

    def get(self, step_id: str):
        return self.steps[self.index[step_id]]

    def next_id(self, step_id: str, skip: Collection[str] = ()) -> Optional[str]:
        """Sequential successor of a main-flow step, passing over ids in ``skip``."""
        for candidate in self.main_flow[self.main_flow.index(step_id) + 1:]:
            if candidate not in skip:
                return candidate
        return None

    @staticmethod
    def untaken_branch(step, condition: bool) -> Optional[str]:
        """Target of the ``if`` branch not chosen by ``condition``."""
        return step.else_ if condition else step.then

    def body_of(self, step_id: str):
        """Body step of a ``forEach`` / ``while`` (declared or inline)."""
        return self.bodies[step_id]

    def parallel_members(self, step_id: str) -> list:
        return [self.get(cid) for cid in self.get(step_id).params.get("steps", [])]

    def is_child(self, step_id: str) -> bool:
        return step_id in self.children

    # ─── Construction ─────────────────────────────────────────

    @classmethod
    def build(cls, preset) -> "StepGraph":
        """Index the preset's steps and validate every reference.

        Raises:
            ValidationError: Duplicate ids, dangling or invalid references, cycles
        """
        graph = cls(steps=list(preset.steps))
        problems: list[str] = []

        for position, step in enumerate(graph.steps):
            if step.id in graph.index:
                problems.append(f"duplicate step id '{step.id}'")
                continue
            graph.index[step.id] = position

        for step in graph.steps:
            graph._check_step(step, problems)

        graph.main_flow = [s.id for s in graph.steps if s.id not in graph.children]
        if not graph.main_flow:
            problems.append("no step is reachable from the main flow")

        for step in graph.steps:
            if step.action != "if":
                continue
            for key, target in (("then", step.then), ("else", step.else_)):
                if target and target in graph.children:
                    problems.append(
                        f"step '{step.id}': {key} target '{target}' runs inside "
                        f"'{graph.children[target]}' and cannot be jumped to"
                    )

        if not problems:
            graph._build_edges()
            cycle = graph._find_cycle()
            if cycle:
                problems.append("cycle in step graph: " + " -> ".join(cycle))

        if problems:
            raise ValidationError(f"Invalid step graph in preset '{preset.name}'", problems)
        return graph

    def _ref(self, owner: str, key: str, target: Any, problems: list[str]) -> bool:
        if not isinstance(target, str) or not target:
            problems.append(f"step '{owner}': {key} must be a step id")
            return False
        if target not in self.index:
            problems.append(f"step '{owner}': {key} references unknown step '{target}'")
            return False
        if target == owner:
            problems.append(f"step '{owner}': {key} references itself")
            return False
        return True

    def _claim(self, parent: str, child: str, problems: list[str]) -> None:
        owner = self.children.get(child)
        if owner is not None and owner != parent:
            problems.append(f"step '{child}' is used by both '{owner}' and '{parent}'")
            return
        self.children[child] = parent
        if self.get(child).action in FLOW_ONLY_ACTIONS:
            problems.append(
                f"step '{parent}': '{child}' uses '{self.get(child).action}', "
                "which can only run in the main flow"
            )

    def _check_step(self, step, problems: list[str]) -> None:
        if step.action == "if":
            if step.condition is None:
                problems.append(f"step '{step.id}': 'if' requires a condition")
            for key, target in (("then", step.then), ("else", step.else_)):
                if target is not None:
                    self._ref(step.id, key, target, problems)
        elif step.then is not None or step.else_ is not None:
            problems.append(f"step '{step.id}': then/else are only valid on 'if' steps")

        if step.action in LOOP_ACTIONS:
            self._check_loop(step, problems)
        elif step.action == "parallel":
            members = step.params.get("steps")
            if not isinstance(members, list) or not members:
                problems.append(f"step '{step.id}': 'parallel' requires a non-empty steps list")
                return
            for member in members:
                if self._ref(step.id, "parallel.steps", member, problems):
                    self._claim(step.id, member, problems)

    def _check_loop(self, step, problems: list[str]) -> None:
        from workflow.preset import Step

        for param in _REQUIRED_PARAMS[step.action]:
            if step.params.get(param) in (None, ""):
                problems.append(f"step '{step.id}': '{step.action}' requires params.{param}")

        body = step.params.get("step")
        if isinstance(body, str):
            if self._ref(step.id, f"{step.action}.step", body, problems):
                self._claim(step.id, body, problems)
                self.bodies[step.id] = self.get(body)
        elif isinstance(body, dict):
            try:
                inline = Step.model_validate({"id": f"{step.id}_body", **body})
            except PydanticValidationError as e:
                for error in e.errors():
                    location = ".".join(str(p) for p in error["loc"])
                    problems.append(f"step '{step.id}': body {location}: {error['msg']}")
                return
            if inline.action in FLOW_ONLY_ACTIONS:
                problems.append(f"step '{step.id}': a loop body cannot use '{inline.action}'")
                return
            self.bodies[step.id] = inline
            if inline.action in LOOP_ACTIONS:
                self._check_loop(inline, problems)
        elif body is not None:
            problems.append(f"step '{step.id}': {step.action}.step must be a step id or a step object")

    def _build_edges(self) -> None:
        for position, step_id in enumerate(self.main_flow):
            step = self.get(step_id)
            targets: list[str] = []
            if step.action == "if":
                targets.extend(t for t in (step.then, step.else_) if t)
            if not (step.action == "if" and step.then and step.else_):
                if position + 1 < len(self.main_flow):
                    targets.append(self.main_flow[position + 1])
            self.edges[step_id] = targets
        for child, parent in self.children.items():
            self.edges.setdefault(parent, []).append(child)
            self.edges.setdefault(child, [])

    def _find_cycle(self) -> Optional[list[str]]:
        """Iterative DFS; returns the first cycle found as a path of ids."""
        white, grey, black = 0, 1, 2
        color = {node: white for node in self.edges}

        for root in self.edges:
            if color[root] != white:
                continue
            stack = [(root, iter(self.edges[root]))]
            path = [root]
            color[root] = grey
            while stack:
                node, successors = stack[-1]
                advanced = False
                for succ in successors:
                    state = color.get(succ, white)
                    if state == grey:
                        return path[path.index(succ):] + [succ]
                    if state == white:
                        color[succ] = grey
                        stack.append((succ, iter(self.edges.get(succ, []))))
                        path.append(succ)
                        advanced = True
                        break
                if not advanced:
                    color[node] = black
                    stack.pop()
                    path.pop()
        return None
