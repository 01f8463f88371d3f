import argparse
import json
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _error_text(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)


def _print_result(result: dict) -> None:
    meta = result.get("metadata") or {}
    print(f"Session: {result.get('session_id')}")
    print(
        f"Status: {result.get('status')} "
        f"({meta.get('steps_completed', 0)}/{meta.get('steps_total', 0)} steps, "
        f"{meta.get('total_time_ms', 0)} ms)"
    )
    if meta.get("best_effort"):
        print("Plan did not pass verification; ran best effort.")
    decision = meta.get("policy_decision") or {}
    if decision:
        print(f"Policy: {decision.get('action')} - {decision.get('reason')}")
    for step in result.get("steps") or []:
        print(f"- [{step.get('status')}] {step.get('id')}: {step.get('title')}")
    print()
    print(result.get("final_report") or "(no report)")


def run_ask(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/orchestrate"), json={"query": args.query}, timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Research failed: HTTP {resp.status_code} {_error_text(resp)}")
            return 1
        result = resp.json()
    if args.json:
        print(json.dumps(result, indent=2))
    else:
        _print_result(result)
    return 0


def run_session(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, f"/api/sessions/{args.session_id}"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch session: HTTP {resp.status_code} {_error_text(resp)}")
            return 1
        session = resp.json()
    if args.json or not session.get("result"):
        print(json.dumps(session, indent=2))
    else:
        _print_result(session["result"])
    return 0


def run_knowledge(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, f"/api/sessions/{args.session_id}/knowledge"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch knowledge: HTTP {resp.status_code} {_error_text(resp)}")
            return 1
        entries = resp.json().get("knowledge") or []
    if not entries:
        print("No knowledge stored for this session.")
        return 0
    for entry in entries:
        print(f"[{entry.get('relevance', 0):.2f}] {entry.get('id')}")
        print(entry.get("content") or "")
        print()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deep research CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Run a research query")
    ask.add_argument("query", help="Research question")
    ask.add_argument("--timeout", type=float, default=330, help="Max wait seconds")
    ask.add_argument("--json", action="store_true", help="Print the raw result")

    session = subparsers.add_parser("session", help="Show a stored session")
    session.add_argument("session_id")
    session.add_argument("--json", action="store_true", help="Print the raw record")

    knowledge = subparsers.add_parser("knowledge", help="List knowledge entries for a session")
    knowledge.add_argument("session_id")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "ask":
        return run_ask(args)
    if args.command == "session":
        return run_session(args)
    if args.command == "knowledge":
        return run_knowledge(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
