#!/usr/bin/env python3
"""
Developer CLI for inspecting redirect decisions.
Usage: python -m linkpulse.cli_tools {seed,inspect,resolve} ...
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from linkpulse.database import get_db, engine, Base
from linkpulse.engine import redirect_engine
from linkpulse.schemas import RedirectContext
from linkpulse.services import LinkService, ClickService
from linkpulse.utils import format_short_url

DEMO_RULES = [
    {
        "id": "mobile",
        "priority": 1,
        "conditions": [{"field": "device", "operator": "eq", "value": "mobile"}],
        "target_url": "https://m.example.com",
    },
    {
        "id": "lusophone",
        "priority": 2,
        "conditions": [{"field": "country", "operator": "in", "value": ["BR", "PT"]}],
        "target_url": "https://example.com/pt",
    },
]


def seed(code: str = "demo", target: str = "https://example.com", owner: str = None):
    """Create a demo link with device and country rules."""
    Base.metadata.create_all(bind=engine)

    db = next(get_db())
    try:
        link, error = LinkService.create_link(
            db,
            short_code=code,
            target_url=target,
            owner_id=owner,
            rules=DEMO_RULES,
            scripts=[{"id": "busy-day", "condition": "clicks_today > 100", "action": "notify"}],
            limits={"max_clicks_per_day": 1000},
        )
        if error:
            print(f"Could not create link: {error}")
            return None
        print(f"Created {format_short_url(link.short_code)} -> {link.default_target_url} with {len(DEMO_RULES)} rules")
        return link
    finally:
        db.close()


def inspect(code: str):
    """Print a link's configuration, counters and latest clicks."""
    Base.metadata.create_all(bind=engine)

    db = next(get_db())
    try:
        link = LinkService.find_by_short_code(db, code)
        if not link:
            print(f"Link {code} not found.")
            return

        print(f"\n/{link.short_code} [{link.state.value}] -> {link.default_target_url}")
        print(f"Clicks: total={link.total_clicks} unique={link.unique_clicks} today={link.clicks_today}")
        print(f"Limits: {link.limits.model_dump_json(exclude_none=True)}")
        print("-" * 80)
        print(f"{'Priority':<10} {'Rule':<20} {'Active':<8} {'Target'}")
        print("-" * 80)
        for rule in sorted(link.rules, key=lambda r: r.priority):
            print(f"{rule.priority:<10} {rule.id:<20} {str(rule.active):<8} {rule.target_url}")
            for cond in rule.conditions:
                print(f"{'':<10} {cond.field.value} {cond.operator.value} {json.dumps(cond.value)}")
        print("-" * 80)
        for click in ClickService.recent_for_link(db, link.id, limit=10):
            flags = "bot" if click.is_bot else ("suspicious" if click.is_suspicious else "ok")
            print(f"{click.timestamp} {click.country or '--':<3} {(click.device or '-'):<8} {flags:<11} -> {click.redirected_to}")
    finally:
        db.close()


def resolve(code: str, context: RedirectContext):
    """Run the redirect engine for a hand-built context, without recording anything."""
    Base.metadata.create_all(bind=engine)

    db = next(get_db())
    try:
        link = LinkService.find_by_short_code(db, code)
        if not link:
            print(f"Link {code} not found.")
            return None
        target = redirect_engine.resolve_target(link, context)
        print(f"Context: {context.model_dump_json(exclude_none=True)}")
        print(f"Target:  {target.url}")
        print(f"Rule:    {target.rule_id or '(default)'}")
        if target.denied:
            print(f"Denied:  {target.denied}")
        return target
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Redirect pipeline developer CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    seed_parser = subparsers.add_parser("seed", help="Create a demo link with rules")
    seed_parser.add_argument("--code", "-c", default="demo", help="Short code")
    seed_parser.add_argument("--target", "-t", default="https://example.com", help="Default target URL")
    seed_parser.add_argument("--owner", "-o", help="Owner id for webhooks")

    inspect_parser = subparsers.add_parser("inspect", help="Show a link's rules, limits and recent clicks")
    inspect_parser.add_argument("code", help="Short code")

    resolve_parser = subparsers.add_parser("resolve", help="Resolve a short code for a given context")
    resolve_parser.add_argument("code", help="Short code")
    resolve_parser.add_argument("--country")
    resolve_parser.add_argument("--language")
    resolve_parser.add_argument("--device", choices=["mobile", "tablet", "desktop", "bot"])
    resolve_parser.add_argument("--os")
    resolve_parser.add_argument("--browser")
    resolve_parser.add_argument("--hour", type=int)
    resolve_parser.add_argument("--day-of-week", type=int)
    resolve_parser.add_argument("--campaign")
    resolve_parser.add_argument("--referrer")

    args = parser.parse_args()

    if args.command == "seed":
        seed(code=args.code, target=args.target, owner=args.owner)
    elif args.command == "inspect":
        inspect(args.code)
    elif args.command == "resolve":
        context = RedirectContext(
            country=args.country.upper() if args.country else None,
            language=args.language,
            hour=args.hour,
            day_of_week=args.day_of_week,
            device=args.device,
            os=args.os,
            browser=args.browser,
            campaign=args.campaign,
            referrer=args.referrer,
        )
        resolve(args.code, context)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
