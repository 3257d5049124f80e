"""
Main orchestrator for TFS User Sync.

Reads the valid users of every collection on a source server, shows them to
the operator and, once confirmed, adds them to a group or team on a target
collection.
"""

import sys
import logging
import argparse
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from tfs_user_sync.collector import collect_valid_users
from tfs_user_sync.config import load_config, ConfigurationError
from tfs_user_sync.identity.base import TfsAPIError, TfsAuthenticationError, TfsConnectionError
from tfs_user_sync.identity.tfs_rest import TfsIdentityService
from tfs_user_sync.logging_setup import setup_logging, get_log_stats
from tfs_user_sync.membership import add_users_to_group, qualified_group_name
from tfs_user_sync.models import MembershipResult, User

logger = logging.getLogger(__name__)

USAGE = ("TFS User synchronization tool.\n"
         " Usage: tfs-user-sync <source TFS URL> <target Team Project Collection Url> "
         "<target Team Project's name> <target Group or Team's name>\n")

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_CONFIG_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4


def wait_for_enter():
    """Block until the operator presses enter; end of input also continues."""
    sys.stdin.readline()


class SyncTarget:
    """Where collected users get added: a group or team in a team project."""

    def __init__(self, collection_url: str, project: str, group: str):
        self.collection_url = collection_url
        self.project = project
        self.group = group

    @property
    def group_name(self) -> str:
        return qualified_group_name(self.project, self.group)


class SyncOrchestrator:
    """
    Runs one sync: collect from the source, confirm, add to the target.

    Services are built through ``service_factory`` and output goes through
    ``echo`` and ``pause`` so the run can be driven without a terminal.
    """

    def __init__(self, source_url: str, target: Optional[SyncTarget] = None,
                 config_path: Optional[str] = None,
                 service_factory: Callable[..., Any] = TfsIdentityService,
                 echo: Callable[[str], None] = print,
                 pause: Callable[[], None] = wait_for_enter):
        self.source_url = source_url
        self.target = target
        self.config_path = config_path
        self.config = None
        self.service_factory = service_factory
        self.echo = echo
        self.pause = pause

        self.sync_stats = {
            'users_collected': 0,
            'users_added': 0,
            'users_not_added': 0,
            'users_not_found': 0,
            'group_found': None,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            self._setup_logging()

            logger.info(f"Starting TFS User Sync from {self.source_url}")

            users = self._collect_users()
            if not users:
                self.echo("User not found.")
                self.echo("")
                self._finish()
                return EXIT_OK

            for user in users:
                self.echo(str(user))

            self.echo("")
            self.echo("Press enter key to continue...")
            self.pause()

            if self.target:
                self._add_users(users)

            self._finish()
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except TfsAuthenticationError as e:
            logger.error(f"Authentication failed: {e}")
            return EXIT_CONNECTION_ERROR
        except TfsConnectionError as e:
            logger.error(f"Connection error: {e}")
            return EXIT_CONNECTION_ERROR
        except TfsAPIError as e:
            logger.error(f"Server error: {e}")
            return EXIT_UNEXPECTED_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED_ERROR

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _collect_users(self) -> List[User]:
        """Print the listing header and collect users from the source server."""
        sync_config = self.config['sync']

        self.echo(f"Getting Project Collection Valid Users members from [{self.source_url}] each collection's...")
        self.echo("Result [DisplayName;AccountName]:")
        self.echo("")

        with self._create_service(self.source_url, 'source') as source:
            users = collect_valid_users(source, sync_config['excluded_identity_types'])

        self.sync_stats['users_collected'] = len(users)
        return users

    def _add_users(self, users: List[User]):
        """Add collected users to the target group and print the outcome."""
        self.echo(f"Adding users to {self.target.group_name}.")
        self.echo("")

        with self._create_service(self.target.collection_url, 'target') as target:
            results = add_users_to_group(
                target, self.target.project, self.target.group, users, echo=self.echo
            )

        # users is never empty here, so no results means the group was missing
        self._record_results(results, group_found=bool(results))

        self.echo("")
        self.echo("Adding users completed.")
        self.echo("")

    def _create_service(self, url: str, side: str):
        return self.service_factory(
            url,
            self.config[side],
            valid_users_group=self.config['sync']['valid_users_group']
        )

    def _record_results(self, results: List[MembershipResult], group_found: bool):
        self.sync_stats['group_found'] = group_found
        for result in results:
            if result.status == MembershipResult.ADDED:
                self.sync_stats['users_added'] += 1
            elif result.status == MembershipResult.NOT_ADDED:
                self.sync_stats['users_not_added'] += 1
            else:
                self.sync_stats['users_not_found'] += 1

    def _finish(self):
        """Log the run summary and wait for the operator before exiting."""
        self.sync_stats['end_time'] = datetime.now()
        self.sync_stats['runtime_seconds'] = (
            self.sync_stats['end_time'] - self.sync_stats['start_time']
        ).total_seconds()
        self._log_sync_summary()

        self.echo("Press enter key to finish.")
        self.pause()

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Users collected: {stats['users_collected']}")
        if self.target:
            logger.info(f"Target group: {self.target.group_name} (found: {stats['group_found']})")
            logger.info(f"Users added: {stats['users_added']}")
            logger.info(f"Users not added: {stats['users_not_added']}")
            logger.info(f"Users not found: {stats['users_not_found']}")

        log_stats = get_log_stats()
        logger.info(f"Log files: {log_stats['log_files_count']} in {log_stats['log_directory']} "
                    f"({log_stats['total_size_mb']} MB)")


def parse_arguments(argv: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
    """
    Parse the positional arguments.

    Every argument is positional, so project and group names may start with
    a dash. A lone ``-h`` or ``--help`` is a request for the usage text.

    Returns:
        ``{'source_url': ..., 'target': SyncTarget or None}``, or None when the
        argument count is neither 1 nor 4
    """
    if argv is None:
        argv = sys.argv[1:]
    if list(argv) in (['-h'], ['--help']):
        return None

    parser = argparse.ArgumentParser(
        prog='tfs-user-sync',
        description='Copy Project Collection Valid Users from one TFS server into a group or team on another.',
        add_help=False
    )
    parser.add_argument('arguments', nargs='*', metavar='ARG',
                        help='<source TFS URL> [<target collection URL> <target project> <target group or team>]')
    # "--" stops option parsing
    args = parser.parse_args(['--'] + list(argv))

    if len(args.arguments) not in (1, 4):
        return None

    target = None
    if len(args.arguments) == 4:
        target = SyncTarget(*args.arguments[1:])

    return {'source_url': args.arguments[0], 'target': target}


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    parsed = parse_arguments(argv)
    if parsed is None:
        print(USAGE)
        sys.exit(EXIT_USAGE)

    orchestrator = SyncOrchestrator(parsed['source_url'], parsed['target'])
    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
