# captcha_gate/cli.py
import argparse
import asyncio
import dataclasses
import json
import logging
import random
from typing import List, Optional

import uvicorn

from captcha_gate.core.config import Settings, load_settings
from captcha_gate.core.headless import build_headless_host
from captcha_gate.core.host import Event
from captcha_gate.models.models import VerificationOutcome
from captcha_gate.services.controller import CAPTCHA_BOX, VerificationController

log = logging.getLogger(__name__)


async def simulate(settings: Settings, url: str, moves: int = 25, clicks: int = 2,
                   scrolls: int = 3, seed: Optional[int] = None) -> Optional[VerificationOutcome]:
    """Drive a headless page through consent, synthetic input and one verify."""
    rng = random.Random(seed)
    host = build_headless_host(url=url)
    controller = VerificationController(host, settings)
    try:
        host.document.get_element_by_id(CAPTCHA_BOX).click()
        for _ in range(moves):
            host.document.dispatch_event(Event("mousemove", x=rng.uniform(0, 400), y=rng.uniform(0, 300)))
        for _ in range(clicks):
            host.document.dispatch_event(Event("click", x=rng.uniform(0, 400), y=rng.uniform(0, 300)))
        for _ in range(scrolls):
            host.window.dispatch_event(Event("scroll"))
        return await controller.verify()
    finally:
        await controller.aclose()


def _cmd_serve(settings: Settings, args) -> int:
    uvicorn.run("captcha_gate.app:app", host=args.host or settings.server_host,
                port=args.port or settings.server_port, reload=args.reload)
    return 0


def _cmd_simulate(settings: Settings, args) -> int:
    if args.endpoint:
        settings = dataclasses.replace(settings, endpoint=args.endpoint)
    if args.no_delay:
        settings = dataclasses.replace(settings, submit_delay_ms=0)
    outcome = asyncio.run(simulate(settings, args.url, args.moves, args.clicks, args.scrolls, args.seed))
    if outcome is None or outcome.payload is None:
        log.error("Simulation did not produce a payload: %s", outcome.error if outcome else "verify rejected")
        return 1
    print(json.dumps({
        "state": outcome.state.value,
        "notification": outcome.notification,
        "delivery": {"synthesized": outcome.delivery.synthesized, "body": outcome.delivery.body},
        "payload": outcome.payload.to_dict(),
    }, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="captcha-gate", description="Verification gate tools")
    parser.add_argument("--config", help="Path to a captcha-gate YAML config")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the development submission sink")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=_cmd_serve)

    sim = sub.add_parser("simulate", help="Run one headless verification and print the payload")
    sim.add_argument("--url", default="https://example.invalid/captcha/?tgid=12345")
    sim.add_argument("--endpoint", help="Override delivery.endpoint")
    sim.add_argument("--moves", type=int, default=25)
    sim.add_argument("--clicks", type=int, default=2)
    sim.add_argument("--scrolls", type=int, default=3)
    sim.add_argument("--seed", type=int)
    sim.add_argument("--no-delay", action="store_true", help="Skip the UX dwell before submitting")
    sim.set_defaults(func=_cmd_simulate)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s [%(name)s.%(funcName)s] %(message)s")
    return args.func(settings, args)
