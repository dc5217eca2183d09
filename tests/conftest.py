"""Shared fixtures for deployer tests."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from deployer.config import (
    ApiConfig,
    AppConfig,
    BuildConfig,
    ClusterConfig,
    GitConfig,
    RegistryConfig,
    ZeebeConfig,
)
from deployer.domain import WorkflowDefinition
from deployer.process import CommandResult

REVIEW_BPMN = """<?xml version="1.0" encoding="UTF-8"?>
<bpmn:definitions xmlns:bpmn="http://www.omg.org/spec/BPMN/20100524/MODEL"
                  xmlns:zeebe="http://camunda.org/schema/zeebe/1.0"
                  id="Definitions_review" targetNamespace="http://bpmn.io/schema/bpmn">
  <bpmn:process id="document-review" name="Document Review" isExecutable="true">
    <bpmn:startEvent id="Start">
      <bpmn:outgoing>Flow_1</bpmn:outgoing>
    </bpmn:startEvent>
    <bpmn:userTask id="review" name="Review">
      <bpmn:extensionElements>
        <zeebe:taskDefinition type="manual-review" />
      </bpmn:extensionElements>
      <bpmn:incoming>Flow_1</bpmn:incoming>
      <bpmn:outgoing>Flow_2</bpmn:outgoing>
    </bpmn:userTask>
    <bpmn:endEvent id="End">
      <bpmn:incoming>Flow_2</bpmn:incoming>
    </bpmn:endEvent>
    <bpmn:sequenceFlow id="Flow_1" sourceRef="Start" targetRef="review" />
    <bpmn:sequenceFlow id="Flow_2" sourceRef="review" targetRef="End" />
  </bpmn:process>
</bpmn:definitions>
"""

DECLARATION_BPMN = """<?xml version="1.0" encoding="UTF-8"?>
<bpmn:definitions xmlns:bpmn="http://www.omg.org/spec/BPMN/20100524/MODEL"
                  xmlns:zeebe="http://camunda.org/schema/zeebe/1.0"
                  xmlns:guce="http://e-guce.cm/schema/workflow/1.0"
                  id="Definitions_declaration" targetNamespace="http://bpmn.io/schema/bpmn">
  <bpmn:message id="Msg_payment" name="payment-received">
    <bpmn:extensionElements>
      <zeebe:subscription correlationKey="=declarationId" />
    </bpmn:extensionElements>
  </bpmn:message>
  <bpmn:error id="Err_rejected" name="Rejected" errorCode="DECLARATION_REJECTED" />
  <bpmn:process id="import-declaration" name="Import Declaration" isExecutable="true">
    <bpmn:extensionElements>
      <guce:variables>
        <guce:variable name="declarationId" type="string" required="true" description="Declaration reference" />
        <guce:variable name="amount" type="double" required="true" />
        <guce:variable name="itemCount" type="integer" />
        <guce:variable name="arrivalDate" type="date" />
        <guce:variable name="submittedAt" type="datetime" />
        <guce:variable name="urgent" type="boolean" default="false" />
        <guce:variable name="attachments" type="blob" />
      </guce:variables>
    </bpmn:extensionElements>
    <bpmn:startEvent id="Start" name="Declaration submitted" />
    <bpmn:serviceTask id="check-documents" name="Check documents">
      <bpmn:extensionElements>
        <zeebe:taskDefinition type="check-documents" retries="5" />
        <zeebe:properties>
          <zeebe:property name="implementation" value="rest_call" />
        </zeebe:properties>
        <zeebe:ioMapping>
          <zeebe:input source="=declarationId" target="reference" />
          <zeebe:output source="=response.valid" target="documentsValid" />
        </zeebe:ioMapping>
      </bpmn:extensionElements>
    </bpmn:serviceTask>
    <bpmn:exclusiveGateway id="Gateway_valid" name="Documents valid?" default="Flow_reject" />
    <bpmn:userTask id="review_declaration" name="Review declaration">
      <bpmn:extensionElements>
        <zeebe:taskDefinition type="manual-review" />
        <zeebe:assignmentDefinition assignee="=initiatorId" candidateGroups="customs-officers" />
        <zeebe:formDefinition formKey="camunda-forms:bpmn:review-form" />
        <zeebe:priorityDefinition priority="75" />
        <zeebe:taskSchedule dueDate="=now() + duration(&quot;P2D&quot;)" />
      </bpmn:extensionElements>
    </bpmn:userTask>
    <bpmn:boundaryEvent id="Timer_reminder" cancelActivity="false" attachedToRef="review_declaration">
      <bpmn:timerEventDefinition>
        <bpmn:timeCycle>R/PT24H</bpmn:timeCycle>
      </bpmn:timerEventDefinition>
    </bpmn:boundaryEvent>
    <bpmn:serviceTask id="notify_officer" name="Notify officer">
      <bpmn:extensionElements>
        <zeebe:taskDefinition type="notify-officer" />
      </bpmn:extensionElements>
    </bpmn:serviceTask>
    <bpmn:intermediateCatchEvent id="Wait_payment" name="Payment received">
      <bpmn:messageEventDefinition messageRef="Msg_payment" />
    </bpmn:intermediateCatchEvent>
    <bpmn:callActivity id="Issue_certificate" name="Issue certificate" calledElement="issue-certificate">
      <bpmn:extensionElements>
        <zeebe:properties>
          <zeebe:property name="callType" value="kafka_request" />
        </zeebe:properties>
      </bpmn:extensionElements>
    </bpmn:callActivity>
    <bpmn:endEvent id="End" name="Declaration cleared" />
    <bpmn:endEvent id="End_rejected">
      <bpmn:errorEventDefinition errorRef="Err_rejected" />
    </bpmn:endEvent>
    <bpmn:endEvent id="End_reminder" />
    <bpmn:sequenceFlow id="Flow_1" sourceRef="Start" targetRef="check-documents" />
    <bpmn:sequenceFlow id="Flow_2" sourceRef="check-documents" targetRef="Gateway_valid" />
    <bpmn:sequenceFlow id="Flow_ok" name="valid" sourceRef="Gateway_valid" targetRef="review_declaration">
      <bpmn:conditionExpression>=documentsValid = true</bpmn:conditionExpression>
    </bpmn:sequenceFlow>
    <bpmn:sequenceFlow id="Flow_reject" sourceRef="Gateway_valid" targetRef="End_rejected" />
    <bpmn:sequenceFlow id="Flow_3" sourceRef="review_declaration" targetRef="Wait_payment" />
    <bpmn:sequenceFlow id="Flow_4" sourceRef="Wait_payment" targetRef="Issue_certificate" />
    <bpmn:sequenceFlow id="Flow_5" sourceRef="Issue_certificate" targetRef="End" />
    <bpmn:sequenceFlow id="Flow_rem" sourceRef="Timer_reminder" targetRef="notify_officer" />
    <bpmn:sequenceFlow id="Flow_rem_end" sourceRef="notify_officer" targetRef="End_reminder" />
  </bpmn:process>
</bpmn:definitions>
"""


@pytest.fixture
def review_bpmn() -> str:
    return REVIEW_BPMN


@pytest.fixture
def declaration_bpmn() -> str:
    return DECLARATION_BPMN


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        zeebe=ZeebeConfig(gateway_address="localhost:26500"),
        git=GitConfig(
            remote_url="https://git.example.com/guce/workflows.git",
            branch="main",
            username="builder",
            password="git-secret",
        ),
        build=BuildConfig(timeout=30),
        registry=RegistryConfig(
            url="registry.example.com",
            project="guce-workflows",
            username="robot",
            password="registry-secret",
        ),
        cluster=ClusterConfig(chart_repository="oci://registry.example.com/charts"),
        api=ApiConfig(host="127.0.0.1", port=9002),
        work_dir=str(tmp_path / "work"),
    )


@pytest.fixture
def review_workflow(review_bpmn: str) -> WorkflowDefinition:
    return WorkflowDefinition(
        id="wf-review",
        name="Document Review",
        version="1.2.0",
        process_id="document-review",
        bpmn_xml=review_bpmn,
        created_by="alice",
    )


@pytest.fixture
def declaration_workflow(declaration_bpmn: str) -> WorkflowDefinition:
    return WorkflowDefinition(
        id="wf-declaration",
        name="Import Declaration",
        version="2.0.0",
        process_id="import-declaration",
        bpmn_xml=declaration_bpmn,
    )


@pytest.fixture
def mock_runner() -> MagicMock:
    """ProcessRunner double; every command succeeds unless a test says otherwise."""
    runner = MagicMock()
    runner.run = AsyncMock(return_value=CommandResult(stdout="ok", exit_code=0))
    runner.add_secret = MagicMock()
    return runner


@pytest.fixture
def mock_worker() -> MagicMock:
    worker = MagicMock()
    _handlers: dict = {}

    def task_decorator(task_type: str, **kwargs):
        def wrapper(fn):
            _handlers[task_type] = fn
            return fn
        return wrapper

    worker.task = task_decorator
    worker._handlers = _handlers
    return worker


@pytest.fixture
def mock_zeebe_client() -> AsyncMock:
    client = AsyncMock()
    client.deploy_resource = AsyncMock(return_value=MagicMock(key=2251799813685249))
    client.run_process = AsyncMock(return_value=MagicMock(process_instance_key=2251799813685300))
    client.cancel_process_instance = AsyncMock()
    client.publish_message = AsyncMock()
    return client
