"""Workflow Model: the normalized AST produced from a BPMN document."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class StartEventType(str, Enum):
    NONE = 'none'
    MESSAGE = 'message'
    TIMER = 'timer'
    SIGNAL = 'signal'


class EndEventType(str, Enum):
    NONE = 'none'
    ERROR = 'error'
    TERMINATE = 'terminate'
    MESSAGE = 'message'


class ImplementationKind(str, Enum):
    JOB_WORKER = 'job_worker'
    REST_CALL = 'rest_call'
    MESSAGE_PUBLISH = 'message_publish'
    SCRIPT = 'script'


class GatewayType(str, Enum):
    EXCLUSIVE = 'exclusive'
    PARALLEL = 'parallel'
    INCLUSIVE = 'inclusive'
    EVENT_BASED = 'event_based'


class TimerKind(str, Enum):
    DATE = 'date'
    DURATION = 'duration'
    CYCLE = 'cycle'


class CallKind(str, Enum):
    BPMN_PROCESS = 'bpmn_process'
    REST_SERVICE = 'rest_service'
    MESSAGE_REQUEST = 'message_request'


@dataclass
class StartEvent:
    id: str
    name: Optional[str] = None
    type: StartEventType = StartEventType.NONE
    message_name: Optional[str] = None
    timer_expression: Optional[str] = None
    outgoing: list[str] = field(default_factory=list)


@dataclass
class EndEvent:
    id: str
    name: Optional[str] = None
    type: EndEventType = EndEventType.NONE
    error_code: Optional[str] = None
    message_name: Optional[str] = None
    incoming: list[str] = field(default_factory=list)


@dataclass
class UserTask:
    """Human-performed step, completed through the task inbox / form API."""

    id: str
    name: Optional[str] = None
    task_type: Optional[str] = None
    assignee: Optional[str] = None
    candidate_groups: Optional[str] = None
    candidate_users: Optional[str] = None
    form_key: Optional[str] = None
    priority: Optional[int] = None
    due_date: Optional[str] = None
    input_mappings: dict[str, str] = field(default_factory=dict)
    output_mappings: dict[str, str] = field(default_factory=dict)
    incoming: list[str] = field(default_factory=list)
    outgoing: list[str] = field(default_factory=list)


@dataclass
class ServiceTask:
    """Automated step dispatched to a job worker by task type."""

    id: str
    name: Optional[str] = None
    task_type: Optional[str] = None
    implementation: ImplementationKind = ImplementationKind.JOB_WORKER
    retries: int = 3
    input_mappings: dict[str, str] = field(default_factory=dict)
    output_mappings: dict[str, str] = field(default_factory=dict)
    incoming: list[str] = field(default_factory=list)
    outgoing: list[str] = field(default_factory=list)


@dataclass
class Gateway:
    id: str
    type: GatewayType
    name: Optional[str] = None
    default_flow: Optional[str] = None
    incoming: list[str] = field(default_factory=list)
    outgoing: list[str] = field(default_factory=list)


@dataclass
class TimerEvent:
    id: str
    kind: TimerKind = TimerKind.DURATION
    expression: Optional[str] = None
    name: Optional[str] = None
    interrupting: bool = True
    attached_to: Optional[str] = None


@dataclass
class MessageEvent:
    id: str
    message_name: Optional[str] = None
    correlation_key: Optional[str] = None
    name: Optional[str] = None
    interrupting: bool = True
    attached_to: Optional[str] = None


@dataclass
class CallActivity:
    id: str
    called_element: Optional[str] = None
    call_kind: CallKind = CallKind.BPMN_PROCESS
    name: Optional[str] = None
    input_mappings: dict[str, str] = field(default_factory=dict)
    output_mappings: dict[str, str] = field(default_factory=dict)
    incoming: list[str] = field(default_factory=list)
    outgoing: list[str] = field(default_factory=list)


@dataclass
class SequenceFlow:
    id: str
    source_ref: str
    target_ref: str
    name: Optional[str] = None
    condition: Optional[str] = None


@dataclass
class VariableDefinition:
    name: str
    type: Optional[str] = None
    required: bool = False
    default: Optional[Any] = None
    description: Optional[str] = None


@dataclass
class WorkflowModel:
    process_id: str
    process_name: Optional[str] = None
    start_events: list[StartEvent] = field(default_factory=list)
    end_events: list[EndEvent] = field(default_factory=list)
    user_tasks: list[UserTask] = field(default_factory=list)
    service_tasks: list[ServiceTask] = field(default_factory=list)
    gateways: list[Gateway] = field(default_factory=list)
    timer_events: list[TimerEvent] = field(default_factory=list)
    message_events: list[MessageEvent] = field(default_factory=list)
    call_activities: list[CallActivity] = field(default_factory=list)
    sequence_flows: list[SequenceFlow] = field(default_factory=list)
    variables: dict[str, VariableDefinition] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.process_name or self.process_id

    def node_ids(self) -> set[str]:
        """Ids of every flow node captured in the model."""
        groups = (
            self.start_events, self.end_events, self.user_tasks,
            self.service_tasks, self.gateways, self.timer_events,
            self.message_events, self.call_activities,
        )
        return {node.id for group in groups for node in group}
