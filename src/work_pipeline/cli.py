from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Callable, Optional

from .config import resolve_state_dir, write_default_config
from .constants import CONFIG_FILE, NO_OP
from .engine.engine import PipelineEngine, open_engine
from .engine.errors import ConfigError, PipelineError
from .engine.store import StoreCorruptedError
from .render import format_entity_table, format_workflow_state
from .server import create_app

KINDS = ['project', 'feature', 'task']


def _engine(args: argparse.Namespace) -> PipelineEngine:
    return open_engine(resolve_state_dir(args.state_dir))


def _emit(payload: Any) -> int:
    sys.stdout.write(json.dumps(payload, indent=2) + '\n')
    return 0


def _guarded(handler: Callable[[argparse.Namespace], int]) -> Callable[[argparse.Namespace], int]:
    """Report structured failures on stderr as JSON and exit with status 1."""
    def run(args: argparse.Namespace) -> int:
        try:
            return handler(args)
        except PipelineError as exc:
            sys.stderr.write(json.dumps(exc.to_dict()) + '\n')
            return 1
        except (ConfigError, StoreCorruptedError) as exc:
            sys.stderr.write(f'{exc}\n')
            return 1
    return run


def _init(args: argparse.Namespace) -> int:
    state_dir = resolve_state_dir(args.state_dir)
    path = state_dir / CONFIG_FILE
    existed = path.exists()
    write_default_config(path, overwrite=args.force)
    return _emit({'config': str(path), 'created': args.force or not existed})


def _pipelines(args: argparse.Namespace) -> int:
    return _emit({'pipelines': _engine(args).describe_pipelines()})


def _create(args: argparse.Namespace) -> int:
    engine = _engine(args)
    common: dict[str, Any] = {
        'title': args.title,
        'summary': args.summary,
        'description': args.description,
        'priority': args.priority,
        'related_to': args.related or None,
        'entity_id': args.id,
    }
    if args.kind == 'project':
        entity = engine.create_project(**common)
    elif args.kind == 'feature':
        entity = engine.create_feature(project_id=args.project_id, **common)
    else:
        entity = engine.create_task(
            feature_id=args.feature_id,
            project_id=args.project_id,
            complexity=args.complexity,
            **common,
        )
    return _emit({args.kind: entity.to_dict()})


def _show(args: argparse.Namespace) -> int:
    entity = _engine(args).get_entity(args.kind, args.entity_id)
    if entity is None:
        sys.stderr.write(json.dumps({'code': 'NOT_FOUND', 'message': f'{args.kind} not found: {args.entity_id}'}) + '\n')
        return 1
    return _emit({args.kind: entity.to_dict()})


def _list(args: argparse.Namespace) -> int:
    blocked: Optional[bool] = None
    if args.blocked:
        blocked = True
    elif args.unblocked:
        blocked = False
    rows = _engine(args).list_entities(
        args.kind,
        status=args.status,
        project_id=args.project_id,
        feature_id=args.feature_id,
        blocked=blocked,
    )
    if args.table:
        sys.stdout.write(format_entity_table(rows, title=f'{args.kind}s'))
        return 0
    return _emit({'entities': [e.to_dict() for e in rows], 'total': len(rows)})


def _advance(args: argparse.Namespace) -> int:
    return _emit(_engine(args).advance(args.kind, args.entity_id, args.version).to_dict())


def _revert(args: argparse.Namespace) -> int:
    return _emit(_engine(args).revert(args.kind, args.entity_id, args.version).to_dict())


def _terminate(args: argparse.Namespace) -> int:
    result = _engine(args).terminate(args.kind, args.entity_id, args.version, reason=args.reason)
    return _emit(result.to_dict())


def _block(args: argparse.Namespace) -> int:
    blockers: Any = NO_OP if args.hold else list(args.on or [])
    result = _engine(args).block(args.kind, args.entity_id, args.version, blockers, reason=args.reason)
    return _emit(result.to_dict())


def _unblock(args: argparse.Namespace) -> int:
    blockers = list(args.on or [])
    if args.hold:
        blockers.append(NO_OP)
    result = _engine(args).unblock(args.kind, args.entity_id, args.version, blockers)
    return _emit(result.to_dict())


def _deps(args: argparse.Namespace) -> int:
    return _emit(_engine(args).get_dependencies(args.entity_id, args.kind, args.direction))


def _state(args: argparse.Namespace) -> int:
    state = _engine(args).get_workflow_state(args.kind, args.entity_id)
    if args.pretty:
        sys.stdout.write(format_workflow_state(state))
        return 0
    return _emit(state)


def _next_task(args: argparse.Namespace) -> int:
    task = _engine(args).get_next_task(
        project_id=args.project_id,
        feature_id=args.feature_id,
        priority=args.priority,
    )
    return _emit({'task': task.to_dict() if task else None})


def _next_feature(args: argparse.Namespace) -> int:
    feature = _engine(args).get_next_feature(project_id=args.project_id, priority=args.priority)
    return _emit({'feature': feature.to_dict() if feature else None})


def _blocked(args: argparse.Namespace) -> int:
    rows = _engine(args).get_blocked(args.kind, project_id=args.project_id, feature_id=args.feature_id)
    if args.table:
        sys.stdout.write(format_entity_table(rows, title=f'blocked {args.kind}s'))
        return 0
    return _emit({'entities': [e.to_dict() for e in rows], 'total': len(rows)})


def _events(args: argparse.Namespace) -> int:
    engine = _engine(args)
    if args.entity_id:
        return _emit({'events': engine.get_entity_events(args.entity_id, limit=args.limit)})
    return _emit({'events': engine.get_recent_events(limit=args.limit)})


def _cycles(args: argparse.Namespace) -> int:
    return _emit({'cycles': _engine(args).find_blocking_cycles()})


def _server(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'work-pipeline[server]'\n")
        return 1

    app = create_app(state_dir=resolve_state_dir(args.state_dir))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def _add_target(parser: argparse.ArgumentParser, *, versioned: bool = True) -> None:
    parser.add_argument('kind', choices=KINDS)
    parser.add_argument('entity_id')
    if versioned:
        parser.add_argument('--version', required=True, type=int, help='Expected current version')


def _add_scope(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--project-id', default=None)
    parser.add_argument('--feature-id', default=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Status pipelines and dependency blocking for projects, features and tasks')
    parser.add_argument('--state-dir', default=None, help='State directory (default: $WORK_PIPELINE_HOME or ./.work_pipeline)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    init = subparsers.add_parser('init', help='Write the default config.yaml')
    init.add_argument('--force', action='store_true', help='Overwrite an existing config')
    init.set_defaults(func=_init)

    pipelines = subparsers.add_parser('pipelines', help='Show the pipelines in force')
    pipelines.set_defaults(func=_pipelines)

    create = subparsers.add_parser('create', help='Create a project, feature or task')
    create.add_argument('kind', choices=KINDS)
    create.add_argument('title')
    create.add_argument('--summary', default='')
    create.add_argument('--description', default='')
    create.add_argument('--priority', default=None, choices=['HIGH', 'MEDIUM', 'LOW'])
    create.add_argument('--complexity', default=None, type=int, help='Task complexity 1-10')
    create.add_argument('--related', action='append', default=[], help='Related entity id (repeatable)')
    create.add_argument('--id', default=None, help='Explicit id instead of a generated one')
    _add_scope(create)
    create.set_defaults(func=_create)

    show = subparsers.add_parser('show', help='Show one entity')
    _add_target(show, versioned=False)
    show.set_defaults(func=_show)

    lst = subparsers.add_parser('list', help='List entities of a kind')
    lst.add_argument('kind', choices=KINDS)
    lst.add_argument('--status', default=None)
    flag = lst.add_mutually_exclusive_group()
    flag.add_argument('--blocked', action='store_true')
    flag.add_argument('--unblocked', action='store_true')
    lst.add_argument('--table', action='store_true', help='Render a table instead of JSON')
    _add_scope(lst)
    lst.set_defaults(func=_list)

    advance = subparsers.add_parser('advance', help='Move to the next pipeline state')
    _add_target(advance)
    advance.set_defaults(func=_advance)

    revert = subparsers.add_parser('revert', help='Move back to the previous pipeline state')
    _add_target(revert)
    revert.set_defaults(func=_revert)

    terminate = subparsers.add_parser('terminate', help='Mark as WILL_NOT_IMPLEMENT')
    _add_target(terminate)
    terminate.add_argument('--reason', default=None)
    terminate.set_defaults(func=_terminate)

    block = subparsers.add_parser('block', help='Add blockers')
    _add_target(block)
    source = block.add_mutually_exclusive_group(required=True)
    source.add_argument('--on', action='append', help='Blocking entity id (repeatable)')
    source.add_argument('--hold', action='store_true', help='External hold (requires --reason)')
    block.add_argument('--reason', default=None)
    block.set_defaults(func=_block)

    unblock = subparsers.add_parser('unblock', help='Remove blockers')
    _add_target(unblock)
    unblock.add_argument('--on', action='append', help='Blocking entity id to remove (repeatable)')
    unblock.add_argument('--hold', action='store_true', help='Remove the external hold')
    unblock.set_defaults(func=_unblock)

    deps = subparsers.add_parser('deps', help='Show dependencies and dependents')
    _add_target(deps, versioned=False)
    deps.add_argument('--direction', default='both', choices=['dependencies', 'dependents', 'both'])
    deps.set_defaults(func=_deps)

    state = subparsers.add_parser('state', help='Show workflow state')
    _add_target(state, versioned=False)
    state.add_argument('--pretty', action='store_true', help='Render text instead of JSON')
    state.set_defaults(func=_state)

    next_task = subparsers.add_parser('next-task', help='Pick the next task to start')
    next_task.add_argument('--priority', default=None, choices=['HIGH', 'MEDIUM', 'LOW'])
    _add_scope(next_task)
    next_task.set_defaults(func=_next_task)

    next_feature = subparsers.add_parser('next-feature', help='Pick the next feature to start')
    next_feature.add_argument('--priority', default=None, choices=['HIGH', 'MEDIUM', 'LOW'])
    next_feature.add_argument('--project-id', default=None)
    next_feature.set_defaults(func=_next_feature)

    blocked = subparsers.add_parser('blocked', help='List blocked entities of a kind')
    blocked.add_argument('kind', choices=KINDS)
    blocked.add_argument('--table', action='store_true', help='Render a table instead of JSON')
    _add_scope(blocked)
    blocked.set_defaults(func=_blocked)

    events = subparsers.add_parser('events', help='Show recent pipeline events')
    events.add_argument('--entity-id', default=None)
    events.add_argument('--limit', default=50, type=int)
    events.set_defaults(func=_events)

    cycles = subparsers.add_parser('cycles', help='Report blocking cycles')
    cycles.set_defaults(func=_cycles)

    server = subparsers.add_parser('server', help='Start the HTTP API server')
    server.add_argument('--host', default='127.0.0.1')
    server.add_argument('--port', default=8000, type=int)
    server.set_defaults(func=_server)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    return int(_guarded(handler)(args) or 0)


if __name__ == '__main__':
    raise SystemExit(main())
