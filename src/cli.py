#!/usr/bin/env python3
"""CLI entry point for iac-engine.

Verbs:
- validate: Check declarations, references and provider schemas
- plan: Show what apply would change
- apply / destroy: Converge infrastructure to the declarations / remove it
- refresh: Accept drift into state
- output, state: Inspect recorded state
- taint / untaint: Force or cancel replacement of one resource
- force-unlock: Remove a stale state lock
"""

import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

VERB_COMMANDS = {
    'validate': 'Validate declarations',
    'plan': 'Show the changes apply would make',
    'apply': 'Create, update and replace resources',
    'destroy': 'Destroy every resource in state',
    'refresh': 'Record provider-reported state (accept drift)',
    'output': 'Show root outputs',
    'state': 'Inspect state (list, show)',
    'taint': 'Force replacement of a resource on the next apply',
    'untaint': 'Cancel a taint',
    'force-unlock': 'Remove a stale state lock',
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version():
    """Get version from git tags, 'dev' outside a tagged checkout."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def print_usage():
    """Print top-level usage showing verbs."""
    print(f"iac-engine {get_version()}")
    print()
    print("Usage: iac-engine <verb> [options]")
    print()
    print("Commands:")
    for verb, desc in VERB_COMMANDS.items():
        print(f"  {verb:<14} {desc}")
    print()
    print("Run 'iac-engine <verb> --help' for verb-specific options.")
    print()
    print("Examples:")
    print("  iac-engine plan -f infra/")
    print("  iac-engine apply -f infra/ -var env=prod --yes")
    print("  iac-engine destroy -f infra/ --yes")
    print("  iac-engine state list")


def dispatch_verb(verb: str, argv: list) -> int:
    """Dispatch to the verb handler.

    Args:
        verb: The verb (e.g., "plan", "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from orchestrator import cli as verbs

    handlers = {
        'validate': verbs.validate_main,
        'plan': verbs.plan_main,
        'apply': verbs.apply_main,
        'destroy': verbs.destroy_main,
        'refresh': verbs.refresh_main,
        'output': verbs.output_main,
        'state': verbs.state_main,
        'taint': verbs.taint_main,
        'untaint': verbs.untaint_main,
        'force-unlock': verbs.force_unlock_main,
    }
    rc: int = handlers[verb](argv)
    return rc


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0
    if argv[0] == '--version':
        print(get_version())
        return 0

    verb = argv[0]
    if verb not in VERB_COMMANDS:
        print(f"Error: Unknown command '{verb}'")
        print_usage()
        return 1
    return dispatch_verb(verb, argv[1:])


if __name__ == '__main__':
    sys.exit(main())
