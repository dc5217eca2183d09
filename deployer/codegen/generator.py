"""Workflow model -> service source bundle.

``generate`` is a pure function: the same workflow definition and model
always yield byte-identical files in the same order.
"""

from __future__ import annotations

import keyword
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..bpmn.model import ServiceTask, UserTask, WorkflowModel
from ..domain import WorkflowDefinition
from ..naming import file_safe, kebab_case, package_safe, pascal_case, snake_case
from . import templates
from .templates import HandlerSpec, RequestField, ServiceNames

DEFAULT_ZEEBE_ADDRESS = 'zeebe-gateway:26500'

TYPE_MAPPING = {
    'string': 'str',
    'text': 'str',
    'integer': 'int',
    'int': 'int',
    'long': 'int',
    'double': 'float',
    'decimal': 'float',
    'float': 'float',
    'boolean': 'bool',
    'bool': 'bool',
    'date': 'datetime.date',
    'datetime': 'datetime.datetime',
}
FALLBACK_TYPE = 'Any'

FIXED_FIELDS = (
    RequestField(name='initiator_id', variable='initiatorId', annotation='str', required=True),
    RequestField(name='tenant_id', variable='tenantId', annotation='str'),
)


@dataclass
class GeneratedCode:
    """Ordered mapping of relative path -> content for one service."""

    process_id: str
    package_name: str
    files: dict[str, str] = field(default_factory=dict)

    @property
    def paths(self) -> list[str]:
        return list(self.files)


def python_type(declared: Optional[str]) -> str:
    """Annotation for a declared variable type; unknown types map to ``Any``."""
    return TYPE_MAPPING.get((declared or '').strip().lower(), FALLBACK_TYPE)


def _unique(base: str, used: set[str]) -> str:
    candidate, n = base, 2
    while candidate in used:
        candidate = f'{base}_{n}'
        n += 1
    used.add(candidate)
    return candidate


def request_fields(model: WorkflowModel) -> list[RequestField]:
    """Fixed fields followed by one field per declared variable, in declaration order."""
    used = {f.name for f in FIXED_FIELDS}
    result = list(FIXED_FIELDS)
    for variable in model.variables.values():
        name = snake_case(variable.name)
        if keyword.iskeyword(name):
            name = f'{name}_'
        default = None if variable.default is None else str(variable.default)
        result.append(RequestField(
            name=_unique(name, used),
            variable=variable.name,
            annotation=python_type(variable.type),
            required=variable.required,
            declared_type=variable.type,
            default=default,
            description=variable.description,
        ))
    return result


def handler_specs(tasks: Iterable[object]) -> list[HandlerSpec]:
    """Derive module, class and function names; collisions get a numeric suffix."""
    modules: set[str] = set()
    classes: set[str] = set()
    specs = []
    for task in tasks:
        base = snake_case(task.id)
        module = _unique(f'{base}_handler', modules)
        class_name = pascal_case(task.id)
        candidate, n = class_name, 2
        while f'{candidate}Handler' in classes:
            candidate = f'{class_name}{n}'
            n += 1
        classes.add(f'{candidate}Handler')
        specs.append(HandlerSpec(
            module=module,
            class_name=f'{candidate}Handler',
            function=f'handle_{base}',
            task=task,
        ))
    return specs


def service_names(workflow: WorkflowDefinition, model: WorkflowModel) -> ServiceNames:
    package = package_safe(model.process_id)
    route = kebab_case(model.process_id) or package
    return ServiceNames(
        process_id=model.process_id,
        display_name=model.process_name or workflow.display_name or workflow.name or model.process_id,
        package=package,
        prefix=pascal_case(model.process_id),
        route=route,
        distribution=f'{route}-service',
        version=workflow.version,
    )


def generate(
    workflow: WorkflowDefinition,
    model: WorkflowModel,
    zeebe_address: str = DEFAULT_ZEEBE_ADDRESS,
) -> GeneratedCode:
    """Render the complete service bundle for a parsed workflow."""
    names = service_names(workflow, model)
    pkg = names.package
    tasks: list[object] = [*model.user_tasks, *model.service_tasks]
    handlers = handler_specs(tasks)

    files: dict[str, str] = {
        f'{pkg}/__init__.py': templates.package_init(names),
        f'{pkg}/api.py': templates.api_module(names),
        f'{pkg}/service.py': templates.service_module(names),
        f'{pkg}/handlers/__init__.py': templates.handlers_init(names, handlers),
    }
    for spec in handlers:
        if isinstance(spec.task, UserTask):
            content = templates.user_task_handler(spec)
        elif isinstance(spec.task, ServiceTask):
            content = templates.service_task_handler(spec)
        else:
            raise TypeError(f'No handler template for {type(spec.task).__name__}')
        files[f'{pkg}/handlers/{spec.module}.py'] = content

    files[f'{pkg}/request.py'] = templates.request_module(names, request_fields(model))
    files[f'{pkg}/response.py'] = templates.response_module(names)
    files[f'{pkg}/main.py'] = templates.main_module(names)
    files['pyproject.toml'] = templates.pyproject(names)
    files['.env.service'] = templates.env_file(names, zeebe_address)
    files[f'bpmn/{file_safe(model.process_id, pkg)}.bpmn'] = workflow.bpmn_xml

    return GeneratedCode(process_id=model.process_id, package_name=pkg, files=files)
