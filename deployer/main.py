"""Workflow deployer: main entry point.

Loads configuration, seeds the workflow store from a directory of BPMN
files, and serves the deployment API until SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

from .api import DeployerServer
from .bpmn import ParseError, parse
from .config import AppConfig
from .domain import WorkflowDefinition
from .engine import ZeebeEngineClient
from .orchestrator import DeploymentOrchestrator
from .repository import InMemoryDeploymentRepository, InMemoryWorkflowRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def load_workflows(directory: str) -> list[WorkflowDefinition]:
    """One workflow per ``*.bpmn`` file; the file stem is the workflow id."""
    if not directory:
        return []
    root = Path(directory)
    if not root.is_dir():
        logger.warning("Workflow directory %s does not exist", directory)
        return []

    workflows = []
    for path in sorted(root.glob('*.bpmn')):
        xml = path.read_text(encoding='utf-8')
        try:
            model = parse(xml)
        except ParseError as exc:
            logger.warning("Skipping %s: %s", path.name, exc)
            continue
        workflows.append(WorkflowDefinition(
            id=path.stem,
            name=path.stem,
            display_name=model.process_name,
            process_id=model.process_id,
            bpmn_xml=xml,
        ))
    logger.info("Loaded %d workflows from %s", len(workflows), directory)
    return workflows


async def main() -> None:
    config = AppConfig.from_env()

    logger.info("Connecting to Zeebe at %s", config.zeebe.gateway_address)
    orchestrator = DeploymentOrchestrator.from_config(
        config,
        workflows=InMemoryWorkflowRepository(load_workflows(config.workflow_dir)),
        deployments=InMemoryDeploymentRepository(),
        engine=ZeebeEngineClient.from_config(config.zeebe),
    )
    server = DeployerServer(config, orchestrator)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _shutdown() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown)

    await server.start()
    await stop_event.wait()
    await server.stop()
    await orchestrator.close()
    logger.info("All services stopped.")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
