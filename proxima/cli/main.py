"""Top-level modal CLI wiring, argv normalization, and logging setup."""

from __future__ import annotations

import os
import sys

import scriptconfig as scfg
from loguru import logger

from ._common import _load_cfg, log
from .vm import (
    ApplyCLI,
    CopyKeyCLI,
    CreateCLI,
    DeleteCLI,
    ExecCLI,
    ListCLI,
    ProvisionCLI,
    ScriptCLI,
    ShowCLI,
    ShutdownCLI,
    StartCLI,
    StatusCLI,
    StopCLI,
)


class ProximaModalCLI(scfg.ModalCLI):
    """Manage hypervisor VMs and run commands on their guests."""

    list = ListCLI
    show = ShowCLI
    status = StatusCLI
    start = StartCLI
    stop = StopCLI
    shutdown = ShutdownCLI
    delete = DeleteCLI
    create = CreateCLI
    apply = ApplyCLI
    exec = ExecCLI
    script = ScriptCLI
    provision = ProvisionCLI
    copy_key = CopyKeyCLI


def main(argv: list[str] | None = None) -> None:
    verbosity = 1
    config_value = None
    if argv is None:
        argv = sys.argv[1:]
    argv = _normalize_argv(argv)
    if '--config' in argv:
        try:
            config_value = argv[argv.index('--config') + 1]
        except IndexError:
            pass
    try:
        verbosity = _load_cfg(config_value).verbosity
    except Exception:
        verbosity = 1

    explicit_verbose = _count_verbose(argv)
    _setup_logging(explicit_verbose, verbosity)

    try:
        rc = ProximaModalCLI.main(argv=argv, _noexit=True)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('Unhandled proxima error: {}', ex)
        sys.exit(2)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    logger.remove()
    effective_verbosity = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'WARNING'
    if effective_verbosity == 1:
        level = 'INFO'
    elif effective_verbosity >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format='<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>',
    )
    log.debug(
        'Logging configured at {} (effective_verbosity={}, colorize={})',
        level,
        effective_verbosity,
        colorize,
    )


def _normalize_argv(argv: list[str]) -> list[str]:
    """Map hyphenated command spellings onto scriptconfig command names.

    Global options may come before the command, so the first non-option
    token is the one that gets normalized.
    """
    out = list(argv)
    takes_value = {'--config', '--host'}
    i = 0
    while i < len(out):
        item = out[i]
        if item in takes_value:
            i += 2
            continue
        if item.startswith('-'):
            i += 1
            continue
        if item == 'copy-key':
            out[i] = 'copy_key'
        elif item == 'ls':
            out[i] = 'list'
        break
    return _hoist_command(out, takes_value)


def _hoist_command(argv: list[str], takes_value: set[str]) -> list[str]:
    """Move global options that precede the command to after it."""
    lead: list[str] = []
    i = 0
    while i < len(argv) and argv[i].startswith('-'):
        if argv[i] in takes_value and i + 1 < len(argv):
            lead.extend(argv[i : i + 2])
            i += 2
        else:
            lead.append(argv[i])
            i += 1
    if not lead or i >= len(argv) or argv[i] in {'-h', '--help'}:
        return argv
    if any(flag in lead for flag in ('-h', '--help')):
        return argv
    return [argv[i], *lead, *argv[i + 1 :]]


def _count_verbose(argv: list[str]) -> int:
    count = 0
    for item in argv:
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count
