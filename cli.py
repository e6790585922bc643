#!/usr/bin/env python3
"""
CLI de operação do plate-pipeline: filas, dead letters e arquivos órfãos.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from plate_pipeline.config import get_settings
from plate_pipeline.observability import setup_logging
from plate_pipeline.reconcile import (
    list_dead_letters,
    referenced_paths,
    replay_dead_letters,
    sweep_orphans,
)
from plate_pipeline.shared import PredictionResult, QueueService, QueueUnavailable, RawImageJob


def _output_queue() -> QueueService:
    settings = get_settings()
    return QueueService(
        redis_url=settings.output_redis_url,
        queue_name=settings.output_queue_name,
        record_type=PredictionResult,
        dead_letter_queue=settings.dead_letter_queue_name,
    )


def _intake_queue() -> QueueService:
    settings = get_settings()
    return QueueService(
        redis_url=settings.intake_redis_url,
        queue_name=settings.intake_queue_name,
        record_type=RawImageJob,
    )


async def cmd_depth(args) -> int:
    settings = get_settings()
    intake = _intake_queue()
    output = _output_queue()
    try:
        await intake.connect()
        await output.connect()
        depths = {
            settings.intake_queue_name: await intake.get_queue_depth(),
            settings.output_queue_name: await output.get_queue_depth(),
            settings.dead_letter_queue_name: await output.get_dlq_depth(),
        }
    finally:
        await intake.close()
        await output.close()

    if args.json:
        print(json.dumps(depths, indent=2))
    else:
        for name, depth in depths.items():
            print(f"{name}: {depth}")
    return 0


async def cmd_dead_letters(args) -> int:
    queue = _output_queue()
    await queue.connect()
    try:
        entries = await list_dead_letters(queue, limit=args.limit)
    finally:
        await queue.close()

    output = [json.loads(entry.to_json()) for entry in entries]
    print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0


async def cmd_replay(args) -> int:
    queue = _output_queue()
    await queue.connect()
    try:
        report = await replay_dead_letters(queue, limit=args.limit)
    finally:
        await queue.close()

    print(f"Reenfileirados: {len(report.replayed)} | Mantidos: {len(report.kept)}")
    for name in report.replayed:
        print(f"  + {name}")
    return 0


async def cmd_sweep(args) -> int:
    settings = get_settings()
    hours = settings.orphan_retention_hours
    if args.older_than_hours is not None:
        hours = args.older_than_hours
    directory = Path(args.dir) if args.dir else settings.upload_dir

    queue = _output_queue()
    intake = _intake_queue()
    try:
        await queue.connect()
        await intake.connect()
        referenced = await referenced_paths(queue, intake)
    finally:
        await queue.close()
        await intake.close()

    swept = sweep_orphans(directory, referenced, hours * 3600, dry_run=args.dry_run)

    verb = "Seriam removidos" if args.dry_run else "Removidos"
    print(f"{verb}: {len(swept)} arquivos (mais antigos que {hours}h)")
    for path in swept:
        print(f"  - {path}")
    return 0


COMMANDS = {
    "depth": cmd_depth,
    "dead-letters": cmd_dead_letters,
    "replay": cmd_replay,
    "sweep": cmd_sweep,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Operação das filas do plate-pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exemplos:
  # Tamanho das filas
  python cli.py depth

  # Ver as 20 primeiras dead letters
  python cli.py dead-letters --limit 20

  # Reenfileirar itens cujo arquivo local ainda existe
  python cli.py replay

  # Simular limpeza de arquivos órfãos com mais de 48h
  python cli.py sweep --older-than-hours 48 --dry-run
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    depth = sub.add_parser("depth", help="Tamanho das filas de entrada, saída e DLQ")
    depth.add_argument("--json", "-j", action="store_true", help="Saída em formato JSON")

    dead = sub.add_parser("dead-letters", help="Lista entradas da dead letter queue")
    dead.add_argument("--limit", "-n", type=int, default=None, help="Máximo de entradas")

    replay = sub.add_parser("replay", help="Reenfileira dead letters na fila de saída")
    replay.add_argument("--limit", "-n", type=int, default=None, help="Máximo de entradas")

    sweep = sub.add_parser("sweep", help="Remove arquivos locais órfãos")
    sweep.add_argument(
        "--older-than-hours",
        type=float,
        default=None,
        help="Idade mínima em horas (default: orphan_retention_hours)",
    )
    sweep.add_argument("--dir", type=str, default=None, help="Diretório (default: upload_dir)")
    sweep.add_argument("--dry-run", action="store_true", help="Apenas lista, não remove")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    settings = get_settings()
    setup_logging(
        json_format=settings.log_json,
        log_level="WARNING",
        quiet_loggers=settings.quiet_loggers_list,
        quiet_level=settings.quiet_log_level,
    )

    try:
        return asyncio.run(COMMANDS[args.command](args))
    except QueueUnavailable as e:
        print(f"Erro: Redis indisponível: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
