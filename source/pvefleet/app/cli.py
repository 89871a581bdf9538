#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from pvefleet.core.errors import FleetError, InvalidArgumentError, LockHeldError, LockLostError, NotFoundError
from pvefleet.core.models import Settings
from pvefleet.infra.adapters import AsyncProxmoxAdapter
from pvefleet.infra.pve import PveClient
from pvefleet.infra.render import render
from pvefleet.infra.settings import load_settings
from pvefleet.infra.state_store import StateStore
from pvefleet.infra.utils import SecretRedactingFilter, redact
from pvefleet.services.orchestrator import FleetOrchestrator
from pvefleet.services.reconcile_service import describe_record

LOG = logging.getLogger("pve-fleet")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_LOCKED = 3


def _emit(settings: Settings, text: str) -> None:
    sys.stdout.write(redact(text, [settings.proxmox.token_secret.reveal()]))
    if not text.endswith("\n"):
        sys.stdout.write("\n")


async def run(args: argparse.Namespace, settings: Settings) -> int:
    client = PveClient(settings.proxmox, settings.retry)
    proxmox = AsyncProxmoxAdapter(client)
    state = StateStore(Path(args.state_db))
    orchestrator = FleetOrchestrator(settings=settings, proxmox=proxmox, state=state)
    try:
        if args.command == "plan":
            plan = await (orchestrator.plan_destroy() if args.destroy else orchestrator.plan())
            _emit(settings, render("plan.txt.j2", plan=plan, total=len(plan.changes)))
            return EXIT_OK
        if args.command in ("apply", "destroy"):
            op = orchestrator.apply if args.command == "apply" else orchestrator.destroy
            plan, result = await op()
            _emit(settings, render("plan.txt.j2", plan=plan, total=len(plan.changes)))
            if not plan.is_empty():
                _emit(settings, render("apply.txt.j2", result=result))
            return EXIT_OK if result.ok else EXIT_FAILED
        if args.command == "output":
            outputs = await orchestrator.outputs(args.fleet)
            if args.format == "inventory":
                _emit(settings, render("inventory.ini.j2", outputs=outputs, ansible_user=settings.ci_user))
            else:
                _emit(settings, json.dumps(outputs.as_dict(), indent=2))
            return EXIT_OK
        if args.command == "show":
            records = await orchestrator.records()
            _emit(settings, render("state.txt.j2", records=records, describe=describe_record))
            return EXIT_OK
        if args.command == "forget":
            record = await orchestrator.forget(args.name)
            _emit(settings, f"Removed {record.name} (vmid={record.vmid}) from state; the VM was not touched.")
            return EXIT_OK
        if args.command == "force-unlock":
            released = await orchestrator.force_unlock()
            _emit(settings, "Lock released." if released else "No lock was held.")
            return EXIT_OK
        raise InvalidArgumentError(f"unknown command: {args.command}")
    finally:
        await proxmox.close()
        await state.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pve-fleet", description="Declarative Proxmox VM fleet provisioning")
    parser.add_argument("--config", default=os.getenv("PVE_FLEET_CONFIG", "fleet.yaml"))
    parser.add_argument("--state-db", default=os.getenv("PVE_FLEET_STATE_DB", ".pve-fleet/state.db"))
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    sub = parser.add_subparsers(dest="command", required=True)

    plan = sub.add_parser("plan", help="show the changes apply would make")
    plan.add_argument("--destroy", action="store_true", help="plan a destroy instead")
    sub.add_parser("apply", help="converge the fleet to the declared state")
    sub.add_parser("destroy", help="delete every managed node")
    output = sub.add_parser("output", help="print realized names, addresses and ids")
    output.add_argument("--format", choices=("json", "inventory"), default="json")
    output.add_argument("--fleet", help="only nodes of this fleet")
    sub.add_parser("show", help="list recorded node states")
    forget = sub.add_parser("forget", help="drop a node from state without touching the VM")
    forget.add_argument("name")
    sub.add_parser("force-unlock", help="release a lock left behind by a crashed run")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        settings = load_settings(Path(args.config))
        redactor = SecretRedactingFilter([settings.proxmox.token_secret.reveal()])
        for handler in logging.getLogger().handlers:
            handler.addFilter(redactor)
        return asyncio.run(run(args, settings))
    except InvalidArgumentError as exc:
        LOG.error("Invalid input: %s", exc)
        return EXIT_INVALID
    except LockHeldError as exc:
        LOG.error("%s; use force-unlock if that run is gone", exc)
        return EXIT_LOCKED
    except LockLostError as exc:
        LOG.error("%s; re-run apply once the other run has finished", exc)
        return EXIT_LOCKED
    except NotFoundError as exc:
        LOG.error("%s", exc)
        return EXIT_INVALID
    except FleetError as exc:
        LOG.error("%s: %s", type(exc).__name__, exc)
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
