#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import logging
import sys
import threading
import time
from pathlib import Path

from services.config_loader import DEFAULT_CONFIG_PATH, load_config, load_service_configs
from services.event_emitter import (EVENT_CONTEXT_CANCELLED, EVENT_CONTEXT_ERROR, EVENT_CONTEXT_GENERATED,
                                    EVENT_FILES_CHANGED, EVENT_GENERATION_PROGRESS)
from services.exceptions import ServiceException
from services.file_utils import estimate_tokens, get_model_compatibility
from services.workspace_service import WorkspaceService

# --- Logging Setup ---
# Configure logging to output informational messages and above to stderr
logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s', stream=sys.stderr)


def build_workspace(args) -> WorkspaceService:
    """Loads config.ini and applies the command-line overrides."""
    config = load_config(args.config)
    if getattr(args, 'max_size', None):
        config['max_output_size_bytes'] = args.max_size
    if getattr(args, 'truncate', False):
        config['truncate_multi_project_output'] = True
    workspace = WorkspaceService(load_service_configs(config))
    if getattr(args, 'no_gitignore', False):
        workspace.settings.set_use_gitignore(False)
    if getattr(args, 'no_custom_ignore', False):
        workspace.settings.set_use_custom_ignore(False)
    return workspace


def estimate_size(text: str):
    """Logs character count and a rough token estimate."""
    char_count, estimated_tokens = estimate_tokens(text)
    logging.info("--- Size Estimation (Approximate) ---")
    logging.info(f"Total characters in generated context: {char_count:,}")
    logging.info(f"Approximate token estimate (~4 chars/token): {estimated_tokens:,.0f} tokens")
    logging.info(f"-> {get_model_compatibility(estimated_tokens)}")


# --- Generate Mode ---
def run_generate_mode(args):
    """Generates the context for one or more roots and writes it to the output file."""
    output_file_path = Path(args.output).resolve()
    try:
        output_file_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logging.error(f"Invalid or inaccessible output path '{args.output}': {e}")
        sys.exit(1)

    workspace = build_workspace(args)
    done = threading.Event()
    outcome = {}

    def on_terminal(kind):
        def handler(payload):
            outcome[kind] = payload
            done.set()
        return handler

    last_logged = {'percent': -10}

    def on_progress(payload):
        total = payload['total'] or 1
        percent = int(payload['current'] * 100 / total)
        if percent >= last_logged['percent'] + 10:
            last_logged['percent'] = percent
            logging.debug(f"Progress: {payload['current']}/{payload['total']} ({percent}%)")

    workspace.emitter.on(EVENT_CONTEXT_GENERATED, on_terminal('context'))
    workspace.emitter.on(EVENT_CONTEXT_ERROR, on_terminal('error'))
    workspace.emitter.on(EVENT_CONTEXT_CANCELLED, on_terminal('cancelled'))
    workspace.emitter.on(EVENT_GENERATION_PROGRESS, on_progress)

    paths = [str(Path(p).resolve()) for p in args.paths]
    if len(paths) == 1:
        result = workspace.request_context_generation(paths[0], args.exclude)
    else:
        result = workspace.request_multi_project_generation(paths, {p: args.exclude for p in paths})
    if not result['success']:
        logging.error(result['error'])
        sys.exit(1)

    try:
        while not done.wait(0.2):
            pass
    except KeyboardInterrupt:
        logging.warning("Interrupted, cancelling generation...")
        workspace.generator.shutdown()
        done.wait(5)

    if 'context' not in outcome:
        logging.error(outcome.get('error') or outcome.get('cancelled') or "Context generation did not complete.")
        sys.exit(1)

    context = outcome['context']
    try:
        with open(output_file_path, 'w', encoding='utf-8') as f:
            f.write(context)
    except OSError as e:
        logging.error(f"Error writing output file '{args.output}': {e}")
        sys.exit(1)
    logging.info(f"Success! Context written to: {output_file_path}")
    estimate_size(context)


# --- Tree Mode ---
def print_tree(node, prefix="", out=sys.stdout):
    for index, child in enumerate(node.children or []):
        is_last = index == len(node.children) - 1
        flags = []
        if child.is_gitignored:
            flags.append("gitignored")
        if child.is_custom_ignored:
            flags.append("ignored")
        suffix = f"  [{', '.join(flags)}]" if flags else ""
        name = child.name + ("/" if child.is_dir else "")
        out.write(f"{prefix}{'└── ' if is_last else '├── '}{name}{suffix}\n")
        if child.is_dir:
            print_tree(child, prefix + ("    " if is_last else "│   "), out)


def run_tree_mode(args):
    """Prints the filtered tree of a directory, with ignore flags."""
    workspace = build_workspace(args)
    root_path = str(Path(args.path).resolve())
    try:
        workspace.file_service.load_gitignore(root_path)
        root = workspace.file_service.list_files(root_path, workspace.active_rules_for(root_path))
    except ServiceException as e:
        logging.error(str(e))
        sys.exit(1)
    sys.stdout.write(f"{root.name}/\n")
    print_tree(root)


# --- Watch Mode ---
def run_watch_mode(args):
    """Watches a directory and logs every change notification until interrupted."""
    workspace = build_workspace(args)
    workspace.emitter.on(EVENT_FILES_CHANGED, lambda root: logging.info(f"Files changed in {root}"))
    result = workspace.start_file_watcher(str(Path(args.path).resolve()))
    if not result['success']:
        logging.error(result['error'])
        sys.exit(1)
    logging.info(f"Watching {result['watching']} ({len(workspace.watcher.watched_dirs)} directories). Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logging.info("Stopping watcher...")
    finally:
        workspace.shutdown()


# --- Serve Mode ---
def run_serve_mode(args):
    """Imports and runs the Flask + Socket.IO server."""
    logging.info("Running in Web Server mode.")
    import web_server
    web_server.init_services(load_config(args.config))
    logging.info(f"Starting web server on http://{args.host}:{args.port}")
    web_server.run_server(host=args.host, port=args.port, debug=args.debug)


def add_common_arguments(subparser):
    subparser.add_argument('--config', default=DEFAULT_CONFIG_PATH,
                           help=f"Path to the configuration file (default: {DEFAULT_CONFIG_PATH}).")
    subparser.add_argument('--debug', action='store_true', help="Enable verbose debug logging to stderr.")


def add_rule_arguments(subparser):
    subparser.add_argument('--no-gitignore', action='store_true', help="Do not apply the project .gitignore.")
    subparser.add_argument('--no-custom-ignore', action='store_true', help="Do not apply the custom ignore rules.")


# --- Main Execution Logic ---
def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Builds a size-bounded text context (tree + file contents) from project directories.",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    subparsers = parser.add_subparsers(dest='mode', required=True)

    parser_generate = subparsers.add_parser('generate', help='Generate the context into an output file.')
    parser_generate.add_argument('paths', metavar='PATH', nargs='+',
                                 help="One or more project directories (several produce a multi-project context).")
    parser_generate.add_argument('-o', '--output', metavar='OUTPUT_FILE', required=True,
                                 help="Path to the output file where the context will be written.")
    parser_generate.add_argument('--exclude', metavar='REL_PATH', action='append', default=[],
                                 help="Root-relative path to exclude (repeatable).")
    parser_generate.add_argument('--max-size', type=int, default=None,
                                 help="Maximum context size in bytes (overrides config.ini).")
    parser_generate.add_argument('--truncate', action='store_true',
                                 help="With several projects, append a TRUNCATED marker instead of failing on overflow.")
    add_rule_arguments(parser_generate)
    add_common_arguments(parser_generate)
    parser_generate.set_defaults(func=run_generate_mode)

    parser_tree = subparsers.add_parser('tree', help='Print the filtered directory tree.')
    parser_tree.add_argument('path', metavar='PATH')
    add_rule_arguments(parser_tree)
    add_common_arguments(parser_tree)
    parser_tree.set_defaults(func=run_tree_mode)

    parser_watch = subparsers.add_parser('watch', help='Watch a directory and report changes.')
    parser_watch.add_argument('path', metavar='PATH')
    add_rule_arguments(parser_watch)
    add_common_arguments(parser_watch)
    parser_watch.set_defaults(func=run_watch_mode)

    parser_serve = subparsers.add_parser('serve', help='Run the HTTP / Socket.IO server.')
    parser_serve.add_argument('--host', default='127.0.0.1', help='Host address (default: 127.0.0.1).')
    parser_serve.add_argument('--port', type=int, default=5000, help='Port number (default: 5000).')
    add_common_arguments(parser_serve)
    parser_serve.set_defaults(func=run_serve_mode)

    args = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug logging enabled.")

    args.func(args)


# Standard Python entry point check
if __name__ == "__main__":
    main()
