# automation/workflows/models.py
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set, Type

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from automation.clock import utcnow
from automation.exceptions import WorkflowValidationError


class NodeType(str, Enum):
    """Typed steps of a multi-step outreach sequence."""

    SEND = "send"
    WAIT = "wait"
    BRANCH = "branch"
    UPDATE = "update"
    NOTIFY = "notify"
    ENROL = "enrol"
    STOP = "stop"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"


# Nodes that park the enrollment instead of advancing in the same tick
WAITING_NODE_TYPES = {NodeType.WAIT}

REQUIRED_EDGES: Dict[NodeType, tuple] = {
    NodeType.SEND: ("default",),
    NodeType.WAIT: ("default",),
    NodeType.BRANCH: ("yes", "no"),
    NodeType.UPDATE: ("default",),
    NodeType.NOTIFY: ("default",),
    NodeType.ENROL: ("default",),
    NodeType.STOP: (),
}


# ----------------------------------------------------------------------
# Per-node configs
# ----------------------------------------------------------------------


class NodeConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SendConfig(NodeConfig):
    """Email step. Either a template reference or an inline subject/body."""

    template_id: Optional[str] = Field(None, alias="templateId")
    subject: Optional[str] = None
    body: Optional[str] = None

    @model_validator(mode="after")
    def check_content(self) -> "SendConfig":
        if not self.template_id and not (self.subject and self.body):
            raise ValueError("send node needs templateId or both subject and body")
        return self


class WaitConfig(NodeConfig):
    wait_type: Literal["duration", "event"] = Field("duration", alias="waitType")
    duration: Optional[int] = Field(None, ge=1)
    unit: Literal["hours", "days", "weeks"] = "days"
    event_type: Optional[str] = Field(None, alias="eventType")
    timeout_days: Optional[int] = Field(None, alias="timeoutDays", ge=1)

    @model_validator(mode="after")
    def check_mode(self) -> "WaitConfig":
        if self.wait_type == "duration" and self.duration is None:
            raise ValueError("duration wait needs 'duration'")
        if self.wait_type == "event" and not self.event_type:
            raise ValueError("event wait needs 'eventType'")
        return self


BranchOperator = Literal["eq", "neq", "gt", "gte", "lt", "lte", "contains", "not_contains"]


class BranchConfig(NodeConfig):
    condition_type: Literal["event_window", "field_compare", "score_threshold"] = Field(
        ..., alias="conditionType"
    )
    event_type: Optional[str] = Field(None, alias="eventType")
    window_days: int = Field(7, alias="windowDays", ge=1)
    min_count: int = Field(1, alias="minCount", ge=1)
    field: Optional[str] = None
    operator: BranchOperator = "eq"
    value: Any = None
    score: Optional[float] = None

    @model_validator(mode="after")
    def check_condition(self) -> "BranchConfig":
        if self.condition_type == "event_window" and not self.event_type:
            raise ValueError("event_window branch needs 'eventType'")
        if self.condition_type == "field_compare" and not self.field:
            raise ValueError("field_compare branch needs 'field'")
        if self.condition_type == "score_threshold" and self.score is None:
            raise ValueError("score_threshold branch needs 'score'")
        return self


class UpdateConfig(NodeConfig):
    update_type: Literal["field", "tag", "score"] = Field("field", alias="updateType")
    field: Optional[str] = None
    value: Any = None
    tag: Optional[str] = None
    delta: Optional[int] = None

    @model_validator(mode="after")
    def check_variant_fields(self) -> "UpdateConfig":
        if self.update_type == "field" and not self.field:
            raise ValueError("updateType 'field' requires 'field'")
        if self.update_type == "tag" and not self.tag:
            raise ValueError("updateType 'tag' requires 'tag'")
        if self.update_type == "score" and self.delta is None:
            raise ValueError("updateType 'score' requires 'delta'")
        return self


class NotifyConfig(NodeConfig):
    title: str = "Workflow alert"
    message: str = Field(..., min_length=1)
    severity: Literal["low", "medium", "high", "critical"] = "medium"


class EnrolConfig(NodeConfig):
    target_workflow_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("targetWorkflowId", "target_workflow_id"),
        serialization_alias="targetWorkflowId",
    )


class StopConfig(NodeConfig):
    outcome: str = Field(
        "completed",
        min_length=1,
        validation_alias=AliasChoices("outcome", "reason"),
    )


NODE_CONFIG_MODELS: Dict[NodeType, Type[NodeConfig]] = {
    NodeType.SEND: SendConfig,
    NodeType.WAIT: WaitConfig,
    NodeType.BRANCH: BranchConfig,
    NodeType.UPDATE: UpdateConfig,
    NodeType.NOTIFY: NotifyConfig,
    NodeType.ENROL: EnrolConfig,
    NodeType.STOP: StopConfig,
}


# ----------------------------------------------------------------------
# Graph
# ----------------------------------------------------------------------


class WorkflowNode(BaseModel):
    node_id: str = Field(..., min_length=1)
    type: NodeType
    label: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    edges: Dict[str, str] = Field(default_factory=dict, description="handle -> target node_id")

    def settings(self) -> NodeConfig:
        """Parse ``config`` into the node type's typed config. Raises pydantic ValidationError."""
        return NODE_CONFIG_MODELS[self.type].model_validate(self.config)


class WorkflowDefinition(BaseModel):
    """Arena representation: flat node list, edges are node_id references."""

    workflow_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: Optional[str] = None
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    version: int = Field(1, ge=1)
    status: WorkflowStatus = WorkflowStatus.DRAFT
    entry_node_id: str
    nodes: List[WorkflowNode] = Field(default_factory=list)

    def node_map(self) -> Dict[str, WorkflowNode]:
        return {node.node_id: node for node in self.nodes}

    def get_node(self, node_id: Optional[str]) -> Optional[WorkflowNode]:
        if node_id is None:
            return None
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None

    def to_portable(self) -> Dict[str, Any]:
        """The persisted/portable ``{workflow_id, name, version, entry_node_id, nodes}`` shape."""
        return self.model_dump(
            mode="json",
            include={"workflow_id", "name", "version", "entry_node_id", "nodes"},
        )


def _format_validation_error(prefix: str, exc: ValidationError) -> List[str]:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        msg = err.get("msg", "invalid")
        problems.append(f"{prefix}: {loc + ': ' if loc else ''}{msg}")
    return problems


def _immediate_cycle(definition: WorkflowDefinition) -> Optional[List[str]]:
    """Return a cycle made only of non-waiting nodes, or None."""
    nodes = definition.node_map()
    WHITE, GREY, BLACK = 0, 1, 2
    colour: Dict[str, int] = {node_id: WHITE for node_id in nodes}
    stack: List[str] = []

    def visit(node_id: str) -> Optional[List[str]]:
        colour[node_id] = GREY
        stack.append(node_id)
        for target in nodes[node_id].edges.values():
            target_node = nodes.get(target)
            if target_node is None or target_node.type in WAITING_NODE_TYPES:
                continue
            if colour[target] == GREY:
                return stack[stack.index(target):] + [target]
            if colour[target] == WHITE:
                found = visit(target)
                if found:
                    return found
        stack.pop()
        colour[node_id] = BLACK
        return None

    for node_id, node in nodes.items():
        if node.type in WAITING_NODE_TYPES or colour[node_id] != WHITE:
            continue
        found = visit(node_id)
        if found:
            return found
    return None


def validate_definition(definition: WorkflowDefinition) -> List[str]:
    """
    Static checks that decide whether a definition is executable.

    Returns a list of human-readable problems; an empty list means the
    definition may be activated.
    """
    problems: List[str] = []

    seen: Set[str] = set()
    for node in definition.nodes:
        if node.node_id in seen:
            problems.append(f"duplicate node_id '{node.node_id}'")
        seen.add(node.node_id)

    if not definition.nodes:
        problems.append("workflow has no nodes")
    elif definition.entry_node_id not in seen:
        problems.append(f"entry node '{definition.entry_node_id}' does not exist")

    for node in definition.nodes:
        for handle in REQUIRED_EDGES[node.type]:
            if not node.edges.get(handle):
                problems.append(f"node '{node.node_id}' ({node.type.value}) is missing its '{handle}' edge")
        for handle, target in node.edges.items():
            if target and target not in seen:
                problems.append(f"node '{node.node_id}' edge '{handle}' points to unknown node '{target}'")
        try:
            node.settings()
        except ValidationError as e:
            problems.extend(_format_validation_error(f"node '{node.node_id}'", e))

    if not any("duplicate node_id" in p for p in problems):
        cycle = _immediate_cycle(definition)
        if cycle:
            problems.append("cycle without a wait node: " + " -> ".join(cycle))

    return problems


def ensure_executable(definition: WorkflowDefinition) -> None:
    """Raise WorkflowValidationError unless the definition passes static validation."""
    problems = validate_definition(definition)
    if problems:
        raise WorkflowValidationError(
            f"Workflow '{definition.name}' is not executable: {problems[0]}", problems
        )


# ----------------------------------------------------------------------
# Enrollment
# ----------------------------------------------------------------------


class Enrollment(BaseModel):
    """An entity's live position within a workflow graph."""

    enrollment_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    workflow_id: str
    entity_id: str
    entity_type: str = "contact"
    current_node_id: Optional[str] = None
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    outcome: Optional[str] = None
    enrolled_at: datetime = Field(default_factory=utcnow)
    node_entered_at: datetime = Field(default_factory=utcnow)
    next_check_at: Optional[datetime] = Field(None, description="When the sweeper should look again")
    wait_expires_at: Optional[datetime] = None
    last_transition_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    state: Dict[str, Any] = Field(default_factory=dict, description="Per-enrollment field snapshot")
    history: List[Dict[str, Any]] = Field(default_factory=list)
    source_rule_id: Optional[str] = None
    parent_enrollment_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == EnrollmentStatus.ACTIVE

    @property
    def is_finished(self) -> bool:
        return self.status in (EnrollmentStatus.COMPLETED, EnrollmentStatus.STOPPED)
