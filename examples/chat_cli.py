#!/usr/bin/env python3
"""Chat with an OpenRouter model that can call tools on MCP servers.

This example demonstrates:
- settings from the environment (OPENROUTER_API_KEY, MCP_AGENT_*)
- connecting streamable HTTP MCP servers with session resumption
- OAuth authorization for servers that answer 401
- streaming an agentic turn and printing its events
- answering sampling and elicitation requests from the terminal
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from mcp_agent_client import (
    AgenticEvent,
    AgenticLoop,
    AuthRequired,
    ClientSettings,
    CompletionClient,
    ContentUpdated,
    ConversationComplete,
    ElicitationRequested,
    ErrorOccurred,
    InMemoryConversationStore,
    InteractionProxy,
    MaxIterationsReached,
    McpClientError,
    Message,
    OAuthClient,
    OAuthError,
    SamplingProcessor,
    SamplingRequested,
    ServerConfig,
    ServerManager,
    ToolCompleted,
    ToolDispatcher,
    ToolStarted,
)

CONVERSATION_ID = "cli"
DEFAULT_PROMPTS = ["List the tools you can use and what each one is for."]


def parse_args() -> argparse.Namespace:
    """Parse CLI options."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--server",
        action="append",
        dest="servers",
        default=[],
        metavar="NAME=URL",
        help="MCP server to connect. Can be provided multiple times.",
    )
    parser.add_argument(
        "--prompt",
        action="append",
        dest="prompts",
        help="Prompt to send. Can be provided multiple times.",
    )
    parser.add_argument("--model", help="Model id; defaults to MCP_AGENT_MODEL.")
    parser.add_argument(
        "--auto-approve-sampling",
        action="store_true",
        help="Approve server sampling requests without asking.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def _server_configs(specs: list[str]) -> list[ServerConfig]:
    servers: list[ServerConfig] = []
    for value in specs:
        name, sep, url = value.partition("=")
        if not sep or not url:
            raise SystemExit(f"invalid --server value {value!r}, expected NAME=URL")
        servers.append(ServerConfig(id=name, name=name, url=url))
    return servers


async def _ask(question: str) -> str:
    return (await asyncio.to_thread(input, question)).strip()


async def _answer_interaction(event: AgenticEvent, *, auto_approve: bool) -> None:
    if isinstance(event, SamplingRequested):
        if auto_approve:
            event.approve()
            return
        answer = await _ask(f"\n[sampling] {event.server_name} wants a completion. Allow? [y/N] ")
        if answer.lower() == "y":
            event.approve()
        else:
            event.reject()
    elif isinstance(event, ElicitationRequested):
        request = event.request
        if request.mode == "url":
            print(f"\n[elicitation] {request.message}\n  open: {request.url}")
            done = await _ask("Press enter when finished, or type 'skip': ")
            event.respond("decline" if done == "skip" else "accept")
            return

        form = request.form
        print(f"\n[elicitation] {event.server_name}: {request.message}")
        values: dict[str, object] = {}
        for field in form.fields:
            raw = await _ask(f"  {field.label}{' *' if field.required else ''}: ")
            if raw:
                values[field.name] = raw
        errors = form.validate_all(values)
        if errors:
            for name, error in errors.items():
                print(f"  {name}: {error}", file=sys.stderr)
            event.cancel()
        else:
            event.accept(values)


async def _authorize(manager: ServerManager, server_ids: set[str]) -> None:
    for server_id in sorted(server_ids):
        url = await manager.begin_authorization(server_id)
        print(f"\n[auth] {server_id} requires sign-in. Open:\n  {url}")
        callback = await _ask("Paste the redirect URL (empty to skip): ")
        if not callback:
            continue
        try:
            connected = await manager.complete_authorization(CONVERSATION_ID, callback)
        except OAuthError as exc:
            print(f"[auth] {server_id}: {exc}", file=sys.stderr)
            continue
        print(f"[auth] {server_id}: {'connected' if connected else 'still unavailable'}")


async def run_chat(args: argparse.Namespace) -> int:
    """Connect servers, then run one agentic turn per prompt."""
    settings = ClientSettings.from_env()
    if not settings.api_key:
        print("[error] OPENROUTER_API_KEY is not set", file=sys.stderr)
        return 2
    model = args.model or settings.model
    prompts = args.prompts or DEFAULT_PROMPTS

    store = InMemoryConversationStore(_server_configs(args.servers))
    dispatcher = ToolDispatcher()
    async with CompletionClient(settings.api_key, base_url=settings.base_url) as completions:
        proxy = InteractionProxy(SamplingProcessor(completions, dispatcher, default_model=model))
        oauth = OAuthClient(
            client_id=settings.oauth_client_id,
            redirect_uri=settings.oauth_redirect_uri,
        )
        manager = ServerManager(
            store,
            dispatcher,
            oauth=oauth,
            proxy=proxy,
            tool_timeout=settings.tool_timeout,
            extended_tool_timeout=settings.extended_tool_timeout,
        )
        loop = AgenticLoop(
            completions,
            dispatcher,
            store,
            system_prompt=settings.system_prompt,
            max_iterations=settings.max_iterations,
            proxy=proxy,
        )
        manager.set_event_sink(loop.emit)
        pending: set[asyncio.Task[None]] = set()

        try:
            connected = await manager.connect_all(CONVERSATION_ID)
            print(f"[init] connected servers: {', '.join(connected) or 'none'}")
            if manager.needs_auth:
                await _authorize(manager, manager.needs_auth)

            for index, prompt in enumerate(prompts, start=1):
                print(f"\n[user:{index}] {prompt}")
                message = Message(conversation_id=CONVERSATION_ID, role="user", content=prompt)
                await store.save_message(message)
                history = await store.get_messages(CONVERSATION_ID)

                async for event in loop.run(CONVERSATION_ID, model, history):
                    if isinstance(event, ContentUpdated):
                        print(event.delta, end="", flush=True)
                    elif isinstance(event, ToolStarted):
                        print(f"\n[tool] {event.tool_name} ({event.server_id or 'unknown'})")
                    elif isinstance(event, ToolCompleted):
                        status = "error" if event.result.is_error else "ok"
                        print(f"[tool] {event.result.tool_name}: {status}")
                    elif isinstance(event, (SamplingRequested, ElicitationRequested)):
                        task = asyncio.create_task(
                            _answer_interaction(event, auto_approve=args.auto_approve_sampling)
                        )
                        pending.add(task)
                        task.add_done_callback(pending.discard)
                    elif isinstance(event, MaxIterationsReached):
                        print(f"\n[warn] stopped after {event.iterations} iterations")
                    elif isinstance(event, AuthRequired):
                        print(f"\n[error] completion API auth: {event.message}", file=sys.stderr)
                        return 3
                    elif isinstance(event, ErrorOccurred):
                        print(f"\n[error] {event.message}", file=sys.stderr)
                        return 4
                    elif isinstance(event, ConversationComplete):
                        print()
            return 0
        except McpClientError as exc:
            print(f"[error] {exc}", file=sys.stderr)
            return 4
        except KeyboardInterrupt:
            print("\n[interrupt] user cancelled session", file=sys.stderr)
            return 130
        finally:
            for task in pending:
                task.cancel()
            await manager.close()
            await oauth.aclose()


def main() -> None:
    """CLI entrypoint."""
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    raise SystemExit(asyncio.run(run_chat(args)))


if __name__ == "__main__":
    main()
