"""Operator CLI for the membership service."""

from __future__ import annotations

import argparse
import json
from typing import Any

from rich.console import Console
from rich.table import Table

from .ledger import PAYMENTS_COLLECTION, sweep_expired_memberships
from .pricing import supported_plans
from .settings import Settings
from .store import open_store


console = Console()


def _print_json(payload: Any):
    print(json.dumps(payload, indent=2))


def _database_url(args: argparse.Namespace) -> str:
    text = str(getattr(args, "database_url", "") or "").strip()
    return text or Settings.from_env().database_url


def _cmd_serve(args: argparse.Namespace) -> int:
    from .service import main as service_main

    argv: list[str] = []
    if args.host:
        argv += ["--host", args.host]
    if args.port:
        argv += ["--port", str(args.port)]
    service_main(argv)
    return 0


def _cmd_plans(args: argparse.Namespace) -> int:
    plans = supported_plans()
    if args.json:
        _print_json([price.as_dict() for price in plans])
        return 0

    table = Table(title="Executive Membership Plans", header_style="bold cyan")
    table.add_column("Plan")
    table.add_column("Base", justify="right")
    table.add_column("Platform fee", justify="right")
    table.add_column("Total", justify="right")
    for price in plans:
        table.add_row(
            price.plan_label,
            f"₹{price.base_price}",
            f"₹{price.platform_fee}",
            f"₹{price.total_price}",
        )
    console.print(table)
    return 0


def _cmd_sweep_expired(args: argparse.Namespace) -> int:
    store = open_store(_database_url(args))
    demoted = sweep_expired_memberships(store)
    if args.json:
        _print_json({"success": True, "updated": len(demoted), "userIds": demoted})
        return 0
    if not demoted:
        console.print("[dim]No expired executive memberships.[/]")
        return 0
    console.print(f"[green]Demoted {len(demoted)} expired executive member(s):[/]")
    for user_id in demoted:
        console.print(f"  {user_id}")
    return 0


def _cmd_payment(args: argparse.Namespace) -> int:
    store = open_store(_database_url(args))
    payment_id = str(args.payment_id).strip()
    marker = store.get(PAYMENTS_COLLECTION, payment_id)
    if marker is None:
        if args.json:
            _print_json({"found": False, "paymentId": payment_id})
        else:
            console.print(f"[red]No processed-payment record for {payment_id}.[/]")
        return 1
    if args.json:
        _print_json({"found": True, **marker})
        return 0

    table = Table(title=f"Payment {payment_id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key in sorted(marker):
        table.add_row(key, str(marker[key]))
    console.print(table)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="csi-membership", description="CSI NMAMIT membership service tools")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP service")
    serve.add_argument("--host", default="")
    serve.add_argument("--port", type=int, default=0)
    serve.set_defaults(func=_cmd_serve)

    plans = sub.add_parser("plans", help="Show membership pricing")
    plans.add_argument("--json", action="store_true")
    plans.set_defaults(func=_cmd_plans)

    sweep = sub.add_parser("sweep-expired", help="Demote executive members whose membership has ended")
    sweep.add_argument("--database-url", default="")
    sweep.add_argument("--json", action="store_true")
    sweep.set_defaults(func=_cmd_sweep_expired)

    payment = sub.add_parser("payment", help="Show the processed-payment record for a payment id")
    payment.add_argument("payment_id")
    payment.add_argument("--database-url", default="")
    payment.add_argument("--json", action="store_true")
    payment.set_defaults(func=_cmd_payment)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    func = getattr(args, "func", None)
    if func is None:
        parser.print_help()
        return 1
    return int(func(args))


if __name__ == "__main__":
    raise SystemExit(main())
