#!/usr/bin/env python3
"""
Invoice Import: CLI entry point.

Usage examples:
  python main.py check                                  # Verify setup (LLM, inventory)
  python main.py suggest "eSun PETG Red 1kg"            # Show possible duplicates
  python main.py import invoice.jpg                     # Review new items interactively
  python main.py import invoice.pdf --yes               # Accept the default decisions
  python main.py import invoice.pdf --decisions d.json  # Scripted decisions
  python main.py show-handoff                           # Print the pending PO draft
"""
import json
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import click

from bootstrap import ensure_config_files
from config import Config
from models.inventory import CONSUMABLE_CATEGORIES, MATERIAL_KINDS
from reconciliation.decisions import MATERIAL_TYPES
from reconciliation.handoff import PurchaseOrderHandoff
from reconciliation.inventory import get_inventory
from reconciliation.invoice_parser import InvoiceParser
from reconciliation.session import ReconciliationSession
from reconciliation.similarity import get_matcher


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quieten noisy third-party loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


def _build_parser(config: Config) -> InvoiceParser:
    return InvoiceParser(
        model=config.llm_model,
        base_url=config.llm_base_url,
        api_key=config.llm_api_key,
        max_tokens=config.llm_max_tokens,
        timeout=config.request_timeout_seconds * 4,
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Invoice Import: turn supplier invoices into inventory and purchase orders."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _setup_logging(verbose)


# --------------------------------------------------------------------
# check command
# --------------------------------------------------------------------

@cli.command()
@click.option("--model", default=None, help="LLM model name to check")
def check(model: str | None) -> None:
    """Verify that the LLM backend and the inventory are reachable."""
    config = Config()
    if model:
        config.llm_model = model

    click.echo("\n=== Invoice Import Setup Check ===\n")

    llm = _build_parser(config).check_connection()
    click.echo(f"  LLM endpoint:  {config.llm_base_url}")
    if llm["ok"]:
        model_status = "✓ available" if llm.get("model_available") else "✗ NOT found"
        click.echo(f"  Model '{config.llm_model}':  {model_status}")
    else:
        click.echo(f"  LLM backend:   ✗ NOT reachable ({llm.get('error')})")
        click.echo("  → Check LLM_BASE_URL, LLM_API_KEY in your .env")

    click.echo()
    try:
        inventory = get_inventory(config)
    except ValueError as e:
        click.echo(f"  Inventory:     ✗ {e}")
        click.echo()
        return

    status = inventory.status()
    if config.inventory_backend == "http":
        tick = "✓" if status["ok"] else f"✗ ({status.get('error')})"
        click.echo(f"  Inventory API: {status['base_url']}  {tick}")
    else:
        for key, label in [("materials_csv", "materials.csv"), ("consumables_csv", "consumables.csv")]:
            info = status[key]
            tick = "✓" if info["exists"] else "✗"
            count_str = f" ({info['count']} loaded)" if info["exists"] else " (file not found)"
            click.echo(f"  {label:<28} {tick}{count_str}")
            if not info["exists"]:
                click.echo(f"     → Expected at: {info['path']}")
    click.echo()


# --------------------------------------------------------------------
# suggest command
# --------------------------------------------------------------------

@cli.command()
@click.argument("name")
@click.option("--strategy", type=click.Choice(["token", "fuzzy"]), default=None,
              help="Similarity strategy (default: SIMILARITY_STRATEGY or token)")
def suggest(name: str, strategy: str | None) -> None:
    """Show existing inventory that looks like NAME."""
    config = Config()
    if strategy:
        config.similarity_strategy = strategy
    snapshot = get_inventory(config).load_snapshot()
    similar = get_matcher(config).find_similar(name, snapshot)

    if not similar:
        click.echo("No similar materials or consumables.")
        return
    for m in similar.materials:
        click.echo(f"  material    {m.id:<20} {m.label}")
    for c in similar.consumables:
        click.echo(f"  consumable  {c.id:<20} {c.name}")


# --------------------------------------------------------------------
# import command
# --------------------------------------------------------------------

def _describe(decision) -> str:
    if decision.action == "link":
        return f"link to existing {decision.category} {decision.linked_id or '(none selected)'}"
    if decision.category == "material":
        f = decision.material_form
        return f"create material {f.material_type} ({f.type}) @ {f.price:.2f}"
    f = decision.consumable_form
    return f"create consumable '{f.name}' [{f.category}] @ {f.unit_cost or '-'}"


def _edit_material(session: ReconciliationSession, index: int) -> None:
    decisions = session.decisions
    form = decisions[index].material_form
    decisions.set_action(index, "create")
    decisions.set_category(index, "material")
    decisions.update_material_form(index, "material_type", click.prompt(
        "    Material", type=click.Choice(MATERIAL_TYPES, case_sensitive=False), default=form.material_type))
    decisions.update_material_form(index, "type", click.prompt(
        "    Type", type=click.Choice(MATERIAL_KINDS), default=form.type))
    decisions.update_material_form(index, "brand", click.prompt("    Brand", default=form.brand))
    decisions.update_material_form(index, "colour", click.prompt("    Colour", default=form.colour))
    decisions.update_material_form(index, "spool_weight_g", click.prompt(
        "    Spool weight (g)", type=float, default=form.spool_weight_g))
    decisions.update_material_form(index, "price", click.prompt("    Price", type=float, default=form.price))


def _edit_consumable(session: ReconciliationSession, index: int) -> None:
    decisions = session.decisions
    form = decisions[index].consumable_form
    decisions.set_action(index, "create")
    decisions.set_category(index, "consumable")
    decisions.update_consumable_form(index, "name", click.prompt("    Name", default=form.name))
    decisions.update_consumable_form(index, "category", click.prompt(
        "    Category", type=click.Choice(CONSUMABLE_CATEGORIES), default=form.category))
    decisions.update_consumable_form(index, "unit_cost", click.prompt(
        "    Unit cost", default=form.unit_cost))


def _link_existing(session: ReconciliationSession, index: int) -> None:
    """Pick any existing material or consumable to link line `index` to."""
    decisions = session.decisions
    category = click.prompt(
        "    Link to", type=click.Choice(["material", "consumable"]), default=decisions[index].category)
    if category == "material":
        records = [(m.id, m.label) for m in session.snapshot.materials]
    else:
        records = [(c.id, c.name) for c in session.snapshot.consumables]
    if not records:
        click.echo(f"    No existing {category}s to link to.")
        return
    for n, (_, label) in enumerate(records, 1):
        click.echo(f"      {n}) {label}")
    pick = click.prompt("    Number", type=click.IntRange(1, len(records)))
    inventory_id = records[pick - 1][0]
    if category == "material":
        decisions.link_material(index, inventory_id)
    else:
        decisions.link_consumable(index, inventory_id)


def _review_interactively(session: ReconciliationSession) -> None:
    for index, item, decision in session.new_items:
        click.echo(f"\n  [{index + 1}] NEW  {item.description}  x{item.quantity} @ {item.unit_cost:.2f}")
        similar = session.suggestions(index)
        options = [("material", m.id, m.label) for m in similar.materials]
        options += [("consumable", c.id, c.name) for c in similar.consumables]
        if options:
            click.echo("      Similar items already in inventory:")
            for n, (kind, _, label) in enumerate(options, 1):
                click.echo(f"        {n}) {kind:<10} {label}")
        click.echo(f"      Default: {_describe(decision)}")

        choice = click.prompt(
            "      Enter=accept, m=material, c=consumable, l=link existing, s=skip line, 1-9=use suggestion",
            default="", show_default=False,
        ).strip().lower()
        if choice == "m":
            _edit_material(session, index)
        elif choice == "c":
            _edit_consumable(session, index)
        elif choice == "l":
            _link_existing(session, index)
        elif choice == "s":
            # Link with nothing selected: the line stays unresolved on the PO
            session.decisions.set_action(index, "link")
        elif choice.isdigit() and 1 <= int(choice) <= len(options):
            kind, inventory_id, _ = options[int(choice) - 1]
            session.use_suggestion(index, kind, inventory_id)
        click.echo(f"      → {_describe(session.decisions[index])}")


def _apply_decisions_file(session: ReconciliationSession, path: Path) -> None:
    """
    Apply scripted decisions: {"<line number>": {...}} with 1-based line numbers.
    See DecisionSet.apply for the recognised keys.
    """
    with open(path, encoding="utf-8") as f:
        scripted = json.load(f)
    for key, changes in scripted.items():
        index = int(key) - 1
        if index not in session.decisions:
            click.echo(f"  ⚠ Line {key} is not a new item -- ignored", err=True)
            continue
        session.decisions.apply(index, changes)


def _commit_with_progress(session: ReconciliationSession):
    total = len(session.decisions.to_create())
    if total == 0:
        return session.commit()
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(session.commit)
        with click.progressbar(length=total, label="  Creating products") as bar:
            shown = 0
            while True:
                completed, _ = session.progress
                bar.update(completed - shown)
                shown = completed
                if future.done():
                    break
                time.sleep(0.1)
        return future.result()


@cli.command("import")
@click.argument("invoice_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--model", "-m", default=None, help="LLM model (default: LLM_MODEL)")
@click.option("--yes", "-y", is_flag=True, help="Accept the default decisions without prompting")
@click.option("--decisions", "decisions_file", default=None, type=click.Path(exists=True, dir_okay=False),
              help="JSON file of scripted decisions keyed by line number")
@click.option("--handoff/--no-handoff", default=None,
              help="Hand the result to purchase-order creation (default: ask)")
@click.option("--workers", default=None, type=int, help="Parallel creation calls (default: 1)")
def import_invoice(
    invoice_file: str,
    model: str | None,
    yes: bool,
    decisions_file: str | None,
    handoff: bool | None,
    workers: int | None,
) -> None:
    """Import INVOICE_FILE: detect products, create new ones, prepare a PO."""
    ensure_config_files()
    config = Config()
    if model:
        config.llm_model = model
    if workers is not None:
        config.creation_workers = workers
    interactive = not yes and decisions_file is None

    with ReconciliationSession(_build_parser(config), get_inventory(config), config) as session:
        for warning in session.warnings:
            click.echo(f"  ⚠ {warning}", err=True)

        click.echo(f"\n  Parsing {Path(invoice_file).name} ...")
        ok = session.upload(invoice_file)
        while not ok:
            click.echo(f"  ✗ {session.error}", err=True)
            if not interactive or session.file_name is None or not click.confirm("  Try again?"):
                sys.exit(1)
            ok = session.retry()

        invoice = session.invoice
        click.echo()
        click.echo(f"  Supplier:    {invoice.supplier_name or '(unknown)'}")
        click.echo(f"  Invoice:     {invoice.invoice_number or '(none)'}")
        click.echo(f"  Delivery:    {invoice.expected_delivery or '(not stated)'}")

        matched = session.matched_items
        if matched:
            click.echo(f"\n  Matched to existing inventory ({len(matched)}):")
            for index, item in matched:
                ref = item.material_id or item.consumable_id
                click.echo(f"    ✓ [{index + 1}] {item.description}  x{item.quantity}  → {item.type} {ref}")

        if len(session.decisions):
            click.echo(f"\n  New products detected ({len(session.decisions)}):")
            if decisions_file:
                _apply_decisions_file(session, Path(decisions_file))
            elif interactive:
                _review_interactively(session)
            for index, item, decision in session.new_items:
                click.echo(f"    + [{index + 1}] {item.description}  → {_describe(decision)}")
        else:
            click.echo("\n  All items matched existing inventory.")

        click.echo()
        summary = _commit_with_progress(session)

        click.echo(f"\n  ✓ {summary.created_count} product(s) created, {summary.linked_count} linked")
        for failure in summary.failures:
            click.echo(f"  ✗ [{failure.index + 1}] {failure.message}", err=True)
        for warning in session.warnings:
            click.echo(f"  ⚠ {warning}", err=True)

        if handoff is None:
            handoff = interactive and click.confirm("\n  Create a purchase order from this invoice?", default=True)
        if handoff:
            result = session.hand_off()
            click.echo(f"\n  Purchase-order draft ready: {result['path']}")
            click.echo(f"  Expires:  {result['expires_at']}")
            webhook = result.get("webhook")
            if webhook:
                click.echo(f"  Webhook:  {webhook['status']}")


# --------------------------------------------------------------------
# show-handoff command
# --------------------------------------------------------------------

@cli.command("show-handoff")
@click.option("--keep", is_flag=True, help="Leave the draft in place after printing it")
def show_handoff(keep: bool) -> None:
    """Print the pending purchase-order draft (if not expired)."""
    draft = PurchaseOrderHandoff(Config()).load(consume=not keep)
    if draft is None:
        click.echo("No pending purchase-order draft.")
        return
    click.echo(json.dumps(draft.model_dump(by_alias=True), indent=2))


if __name__ == "__main__":
    cli()
