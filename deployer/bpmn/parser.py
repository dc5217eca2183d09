"""BPMN XML parser and structural validator.

``parse`` turns a BPMN 2.0 document into a :class:`WorkflowModel`;
``validate`` runs structural checks on the raw document and never raises.
Elements are matched by local name, so ``bpmn:``-prefixed and
default-namespace documents behave the same, and vendor extensions are
read from both the Zeebe (``zeebe:*``) and Camunda 7 (``camunda:*``)
dialects.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Iterable, Iterator, Optional, Union

from .model import (
    CallActivity,
    CallKind,
    EndEvent,
    EndEventType,
    Gateway,
    GatewayType,
    ImplementationKind,
    MessageEvent,
    SequenceFlow,
    ServiceTask,
    StartEvent,
    StartEventType,
    TimerEvent,
    TimerKind,
    UserTask,
    VariableDefinition,
    WorkflowModel,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 3

FLOW_NODE_TAGS = frozenset({
    'startEvent', 'endEvent', 'intermediateCatchEvent', 'intermediateThrowEvent',
    'boundaryEvent', 'task', 'userTask', 'serviceTask', 'scriptTask', 'sendTask',
    'receiveTask', 'businessRuleTask', 'manualTask', 'callActivity', 'subProcess',
    'exclusiveGateway', 'parallelGateway', 'inclusiveGateway', 'eventBasedGateway',
    'complexGateway',
})

GATEWAY_TAGS = {
    'exclusiveGateway': GatewayType.EXCLUSIVE,
    'parallelGateway': GatewayType.PARALLEL,
    'inclusiveGateway': GatewayType.INCLUSIVE,
    'eventBasedGateway': GatewayType.EVENT_BASED,
}

_IMPLEMENTATION_ALIASES = {
    'KAFKA_PUBLISH': ImplementationKind.MESSAGE_PUBLISH,
}

_CALL_KIND_ALIASES = {
    'KAFKA_REQUEST': CallKind.MESSAGE_REQUEST,
}

XmlInput = Union[str, bytes]


class ParseError(Exception):
    """Raised when a document cannot be turned into a workflow model."""


@dataclass
class ValidationResult:
    """Outcome of structural validation; only ``errors`` block deployment."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


# ── XML helpers ───────────────────────────────────────────


def _local(tag: object) -> str:
    if not isinstance(tag, str):
        return ''
    return tag.rsplit('}', 1)[-1]


def _attr(el: ET.Element, name: str) -> Optional[str]:
    """Attribute by local name, whatever namespace carries it."""
    if name in el.attrib:
        return el.attrib[name]
    for key, value in el.attrib.items():
        if _local(key) == name:
            return value
    return None


def _children(el: ET.Element, name: str) -> Iterator[ET.Element]:
    return (child for child in el if _local(child.tag) == name)


def _first_child(el: ET.Element, name: str) -> Optional[ET.Element]:
    return next(_children(el, name), None)


def _text(el: Optional[ET.Element]) -> Optional[str]:
    if el is None or el.text is None:
        return None
    return el.text.strip() or None


def _extensions(el: ET.Element, name: str) -> Iterator[ET.Element]:
    """Descendants of ``extensionElements`` with the given local name."""
    for ext in _children(el, 'extensionElements'):
        for node in ext.iter():
            if _local(node.tag) == name:
                yield node


def _extension(el: ET.Element, name: str) -> Optional[ET.Element]:
    return next(_extensions(el, name), None)


def _properties(el: ET.Element) -> dict[str, str]:
    props: dict[str, str] = {}
    for prop in _extensions(el, 'property'):
        key = prop.get('name')
        if key:
            props[key] = prop.get('value', '')
    return props


def _ext_attr(el: ET.Element, ext_name: str, attr: str) -> Optional[str]:
    ext = _extension(el, ext_name)
    if ext is None:
        return None
    return ext.get(attr) or None


def _load(xml: XmlInput) -> ET.Element:
    data = xml.encode('utf-8') if isinstance(xml, str) else xml
    return ET.fromstring(data)


def _processes(root: ET.Element) -> list[ET.Element]:
    return [el for el in root.iter() if _local(el.tag) == 'process']


class _Document:
    """Indexes of one BPMN document scoped to its first process."""

    def __init__(self, root: ET.Element) -> None:
        self.root = root
        self.processes = _processes(root)
        self.process = self.processes[0] if self.processes else None
        scope = self.process if self.process is not None else root

        self.messages = {
            el.get('id'): el for el in root.iter() if _local(el.tag) == 'message' and el.get('id')
        }
        self.errors = {
            el.get('id'): el for el in root.iter() if _local(el.tag) == 'error' and el.get('id')
        }

        self.nodes: list[ET.Element] = []
        self.flows: list[ET.Element] = []
        for el in scope.iter():
            tag = _local(el.tag)
            if tag in FLOW_NODE_TAGS:
                self.nodes.append(el)
            elif tag == 'sequenceFlow':
                self.flows.append(el)

        self.incoming: dict[str, list[str]] = {}
        self.outgoing: dict[str, list[str]] = {}
        for flow in self.flows:
            flow_id = flow.get('id', '')
            self.outgoing.setdefault(flow.get('sourceRef', ''), []).append(flow_id)
            self.incoming.setdefault(flow.get('targetRef', ''), []).append(flow_id)

    def of_type(self, *tags: str) -> list[ET.Element]:
        return [n for n in self.nodes if _local(n.tag) in tags]

    def flows_in(self, el: ET.Element) -> list[str]:
        return self._merge(self.incoming.get(el.get('id', ''), []), _children(el, 'incoming'))

    def flows_out(self, el: ET.Element) -> list[str]:
        return self._merge(self.outgoing.get(el.get('id', ''), []), _children(el, 'outgoing'))

    @staticmethod
    def _merge(derived: list[str], explicit: Iterable[ET.Element]) -> list[str]:
        result = list(derived)
        for ref in explicit:
            value = _text(ref)
            if value and value not in result:
                result.append(value)
        return result

    def message_name(self, definition: ET.Element) -> Optional[str]:
        ref = definition.get('messageRef')
        if not ref:
            return None
        message = self.messages.get(ref)
        if message is None:
            return ref
        return message.get('name') or ref

    def error_code(self, definition: ET.Element) -> Optional[str]:
        ref = definition.get('errorRef')
        if not ref:
            return None
        error = self.errors.get(ref)
        if error is None:
            return ref
        return error.get('errorCode') or error.get('name') or ref


# ── Public API ────────────────────────────────────────────


def parse(xml: XmlInput) -> WorkflowModel:
    """Parse a BPMN document into a workflow model.

    Raises:
        ParseError: The XML is malformed or contains no process element.
    """
    try:
        root = _load(xml)
    except ET.ParseError as exc:
        raise ParseError(f'Malformed BPMN XML: {exc}') from exc

    doc = _Document(root)
    if doc.process is None:
        raise ParseError('No process found in BPMN')

    process = doc.process
    model = WorkflowModel(
        process_id=process.get('id', ''),
        process_name=process.get('name'),
        start_events=[_start_event(doc, el) for el in doc.of_type('startEvent')],
        end_events=[_end_event(doc, el) for el in doc.of_type('endEvent')],
        user_tasks=[_user_task(doc, el) for el in doc.of_type('userTask')],
        service_tasks=[_service_task(doc, el) for el in doc.of_type('serviceTask')],
        gateways=[_gateway(doc, el) for el in doc.of_type(*GATEWAY_TAGS)],
        timer_events=_timer_events(doc),
        message_events=_message_events(doc),
        call_activities=[_call_activity(doc, el) for el in doc.of_type('callActivity')],
        sequence_flows=[_sequence_flow(el) for el in doc.flows],
        variables=_variables(process),
    )
    logger.debug(
        'Parsed process %s: %d user tasks, %d service tasks, %d flows',
        model.process_id, len(model.user_tasks), len(model.service_tasks),
        len(model.sequence_flows),
    )
    return model


def validate(xml: XmlInput) -> ValidationResult:
    """Run structural checks; problems are reported, never raised."""
    errors: list[str] = []
    warnings: list[str] = []

    try:
        root = _load(xml)
    except (ET.ParseError, ValueError) as exc:
        errors.append(f'BPMN parsing error: {exc}')
        return ValidationResult(valid=False, errors=errors, warnings=warnings)

    doc = _Document(root)

    if doc.process is None:
        errors.append('No process definition found')
    elif len(doc.processes) > 1:
        warnings.append(
            f'Multiple process definitions found; only \'{doc.process.get("id")}\' is deployed'
        )

    start_events = doc.of_type('startEvent')
    if not start_events:
        errors.append('No start event found')
    elif len(start_events) > 1:
        warnings.append('Multiple start events found')

    if not doc.of_type('endEvent'):
        errors.append('No end event found')

    ids = Counter(node.get('id') for node in doc.nodes if node.get('id'))
    for node_id, count in ids.items():
        if count > 1:
            errors.append(f"Duplicate element id '{node_id}'")

    for flow in doc.flows:
        flow_id = flow.get('id', '?')
        for role in ('sourceRef', 'targetRef'):
            ref = flow.get(role)
            if not ref or ref not in ids:
                kind = 'source' if role == 'sourceRef' else 'target'
                errors.append(f"Sequence flow '{flow_id}' references unknown {kind} '{ref or ''}'")

    for node in doc.nodes:
        tag = _local(node.tag)
        node_id = node.get('id', '?')
        if tag not in ('startEvent', 'boundaryEvent') and not doc.flows_in(node):
            warnings.append(f"Element '{node_id}' has no incoming flows")
        if tag != 'endEvent' and not doc.flows_out(node):
            warnings.append(f"Element '{node_id}' has no outgoing flows")

    for task in doc.of_type('userTask'):
        if not _task_type(task):
            warnings.append(f"User task '{task.get('id')}' has no taskType defined")
    for task in doc.of_type('serviceTask'):
        if not _task_type(task):
            warnings.append(f"Service task '{task.get('id')}' has no taskType defined")

    conditioned = {flow.get('id') for flow in doc.flows if _text(_first_child(flow, 'conditionExpression'))}
    for gateway in doc.of_type('exclusiveGateway'):
        outgoing = doc.flows_out(gateway)
        if len(outgoing) <= 1 or gateway.get('default'):
            continue
        if any(flow_id not in conditioned for flow_id in outgoing):
            warnings.append(
                f"Gateway '{gateway.get('id')}' has paths without conditions and no default "
                '(ambiguous routing)'
            )

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


# ── Element extraction ────────────────────────────────────


def _event_definition(el: ET.Element) -> Optional[ET.Element]:
    for child in el:
        if _local(child.tag).endswith('EventDefinition'):
            return child
    return None


def _timer_expression(definition: ET.Element) -> tuple[TimerKind, Optional[str]]:
    for tag, kind in (('timeDate', TimerKind.DATE), ('timeDuration', TimerKind.DURATION),
                      ('timeCycle', TimerKind.CYCLE)):
        child = _first_child(definition, tag)
        if child is not None:
            return kind, _text(child)
    return TimerKind.DURATION, None


def _task_type(el: ET.Element) -> Optional[str]:
    return (
        _ext_attr(el, 'taskDefinition', 'type')
        or _properties(el).get('taskType')
        or _attr(el, 'taskType')
        or None
    )


def _mappings(el: ET.Element, direction: str) -> dict[str, str]:
    result: dict[str, str] = {}
    # zeebe:ioMapping/zeebe:input|output source=... target=...
    for mapping in _extensions(el, direction):
        target = mapping.get('target')
        if target:
            result[target] = mapping.get('source', '')
    # camunda:inputOutput/camunda:inputParameter name=...
    for param in _extensions(el, f'{direction}Parameter'):
        name = param.get('name')
        if name:
            result[name] = _text(param) or ''
    return result


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _start_event(doc: _Document, el: ET.Element) -> StartEvent:
    event = StartEvent(id=el.get('id', ''), name=el.get('name'), outgoing=doc.flows_out(el))
    definition = _event_definition(el)
    if definition is None:
        return event
    tag = _local(definition.tag)
    if tag == 'messageEventDefinition':
        event.type = StartEventType.MESSAGE
        event.message_name = doc.message_name(definition)
    elif tag == 'timerEventDefinition':
        event.type = StartEventType.TIMER
        event.timer_expression = _timer_expression(definition)[1]
    elif tag == 'signalEventDefinition':
        event.type = StartEventType.SIGNAL
    return event


def _end_event(doc: _Document, el: ET.Element) -> EndEvent:
    event = EndEvent(id=el.get('id', ''), name=el.get('name'), incoming=doc.flows_in(el))
    definition = _event_definition(el)
    if definition is None:
        return event
    tag = _local(definition.tag)
    if tag == 'errorEventDefinition':
        event.type = EndEventType.ERROR
        event.error_code = doc.error_code(definition)
    elif tag == 'terminateEventDefinition':
        event.type = EndEventType.TERMINATE
    elif tag == 'messageEventDefinition':
        event.type = EndEventType.MESSAGE
        event.message_name = doc.message_name(definition)
    return event


def _user_task(doc: _Document, el: ET.Element) -> UserTask:
    return UserTask(
        id=el.get('id', ''),
        name=el.get('name'),
        task_type=_task_type(el),
        assignee=_ext_attr(el, 'assignmentDefinition', 'assignee') or _attr(el, 'assignee'),
        candidate_groups=(
            _ext_attr(el, 'assignmentDefinition', 'candidateGroups') or _attr(el, 'candidateGroups')
        ),
        candidate_users=(
            _ext_attr(el, 'assignmentDefinition', 'candidateUsers') or _attr(el, 'candidateUsers')
        ),
        form_key=(
            _ext_attr(el, 'formDefinition', 'formKey')
            or _ext_attr(el, 'formDefinition', 'formId')
            or _attr(el, 'formKey')
        ),
        priority=_int_or_none(_ext_attr(el, 'priorityDefinition', 'priority') or _attr(el, 'priority')),
        due_date=_ext_attr(el, 'taskSchedule', 'dueDate') or _attr(el, 'dueDate'),
        input_mappings=_mappings(el, 'input'),
        output_mappings=_mappings(el, 'output'),
        incoming=doc.flows_in(el),
        outgoing=doc.flows_out(el),
    )


def _implementation(raw: Optional[str]) -> ImplementationKind:
    if not raw:
        return ImplementationKind.JOB_WORKER
    key = raw.strip().upper().replace('-', '_')
    if key in _IMPLEMENTATION_ALIASES:
        return _IMPLEMENTATION_ALIASES[key]
    try:
        return ImplementationKind[key]
    except KeyError:
        logger.debug('Unknown service task implementation %r, using job worker', raw)
        return ImplementationKind.JOB_WORKER


def _retries(raw: Optional[str]) -> int:
    value = _int_or_none(raw)
    return DEFAULT_RETRIES if value is None or value < 0 else value


def _service_task(doc: _Document, el: ET.Element) -> ServiceTask:
    props = _properties(el)
    return ServiceTask(
        id=el.get('id', ''),
        name=el.get('name'),
        task_type=_task_type(el),
        implementation=_implementation(props.get('implementation')),
        retries=_retries(_ext_attr(el, 'taskDefinition', 'retries') or props.get('retries')),
        input_mappings=_mappings(el, 'input'),
        output_mappings=_mappings(el, 'output'),
        incoming=doc.flows_in(el),
        outgoing=doc.flows_out(el),
    )


def _gateway(doc: _Document, el: ET.Element) -> Gateway:
    gateway_type = GATEWAY_TAGS[_local(el.tag)]
    has_default = gateway_type in (GatewayType.EXCLUSIVE, GatewayType.INCLUSIVE)
    return Gateway(
        id=el.get('id', ''),
        type=gateway_type,
        name=el.get('name'),
        default_flow=el.get('default') if has_default else None,
        incoming=doc.flows_in(el),
        outgoing=doc.flows_out(el),
    )


def _timer_events(doc: _Document) -> list[TimerEvent]:
    events = []
    for el in doc.of_type('intermediateCatchEvent', 'boundaryEvent'):
        definition = _event_definition(el)
        if definition is None or _local(definition.tag) != 'timerEventDefinition':
            continue
        kind, expression = _timer_expression(definition)
        events.append(TimerEvent(
            id=el.get('id', ''),
            kind=kind,
            expression=expression,
            name=el.get('name'),
            interrupting=el.get('cancelActivity', 'true') != 'false',
            attached_to=el.get('attachedToRef'),
        ))
    return events


def _correlation_key(doc: _Document, el: ET.Element, definition: ET.Element) -> Optional[str]:
    key = _ext_attr(el, 'subscription', 'correlationKey') or _properties(el).get('correlationKey')
    if key:
        return key
    message = doc.messages.get(definition.get('messageRef', ''))
    if message is not None:
        return _ext_attr(message, 'subscription', 'correlationKey')
    return None


def _message_events(doc: _Document) -> list[MessageEvent]:
    events = []
    for el in doc.of_type('intermediateCatchEvent', 'boundaryEvent'):
        definition = _event_definition(el)
        if definition is None or _local(definition.tag) != 'messageEventDefinition':
            continue
        events.append(MessageEvent(
            id=el.get('id', ''),
            message_name=doc.message_name(definition),
            correlation_key=_correlation_key(doc, el, definition),
            name=el.get('name'),
            interrupting=el.get('cancelActivity', 'true') != 'false',
            attached_to=el.get('attachedToRef'),
        ))
    return events


def _call_kind(raw: Optional[str]) -> CallKind:
    if not raw:
        return CallKind.BPMN_PROCESS
    key = raw.strip().upper().replace('-', '_')
    if key in _CALL_KIND_ALIASES:
        return _CALL_KIND_ALIASES[key]
    try:
        return CallKind[key]
    except KeyError:
        return CallKind.BPMN_PROCESS


def _call_activity(doc: _Document, el: ET.Element) -> CallActivity:
    return CallActivity(
        id=el.get('id', ''),
        called_element=el.get('calledElement') or _ext_attr(el, 'calledElement', 'processId'),
        call_kind=_call_kind(_properties(el).get('callType')),
        name=el.get('name'),
        input_mappings=_mappings(el, 'input'),
        output_mappings=_mappings(el, 'output'),
        incoming=doc.flows_in(el),
        outgoing=doc.flows_out(el),
    )


def _sequence_flow(el: ET.Element) -> SequenceFlow:
    return SequenceFlow(
        id=el.get('id', ''),
        source_ref=el.get('sourceRef', ''),
        target_ref=el.get('targetRef', ''),
        name=el.get('name'),
        condition=_text(_first_child(el, 'conditionExpression')),
    )


def _variables(process: ET.Element) -> dict[str, VariableDefinition]:
    variables: dict[str, VariableDefinition] = {}
    for el in _extensions(process, 'variable'):
        name = el.get('name')
        if not name:
            continue
        variables[name] = VariableDefinition(
            name=name,
            type=el.get('type'),
            required=el.get('required', 'false').strip().lower() == 'true',
            default=el.get('default'),
            description=el.get('description'),
        )
    return variables
