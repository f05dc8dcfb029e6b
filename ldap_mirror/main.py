"""
Main orchestrator for LDAP Mirror.

Starts the local in-memory directory, applies the bootstrap schema and
hierarchy, then mirrors the entries matched by each configured query from the
source directory. Startup favours availability: failures are logged and the
store keeps serving whatever was loaded.
"""

import sys
import signal
import threading
import logging
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional

from ldap_mirror.bootstrap import BootstrapLoader, BootstrapError
from ldap_mirror.config import load_config
from ldap_mirror.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from ldap_mirror.loader import BulkLoader
from ldap_mirror.logging_setup import setup_logging, security_logger
from ldap_mirror.paging import PagedQueryDriver
from ldap_mirror.store import InMemoryDirectoryStore, StoreStartError
from ldap_mirror.transform import EntryTransformer

logger = logging.getLogger(__name__)


class ServiceState(Enum):
    STOPPED = 'stopped'
    STARTING = 'starting'
    BOOTSTRAPPING = 'bootstrapping'
    SYNCING = 'syncing'
    RUNNING = 'running'
    STOPPING = 'stopping'
    ERROR = 'error'


class SyncOrchestrator:
    """
    Sequences bootstrap and mirroring, and owns the store's lifetime.

    ``start()`` never raises: every failure is logged and reflected in
    :attr:`state` and :attr:`sync_stats`.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None,
                 store=None, client=None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file, used when ``config`` is None
            config: Already loaded configuration
            store: Store to use instead of an InMemoryDirectoryStore
            client: Source client to use instead of an LDAPClient
        """
        self.config_path = config_path
        self.config = config
        self.store = store
        self.client = client
        self.state = ServiceState.STOPPED

        self.sync_stats = {
            'queries_processed': 0,
            'queries_failed': 0,
            'entries_fetched': 0,
            'entries_loaded': 0,
            'entries_failed': 0,
            'entries_skipped': 0,
            'schema_records': 0,
            'hierarchy_records': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'query_details': {}
        }

    def _set_state(self, state: ServiceState):
        logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state

    def start(self) -> ServiceState:
        """
        Run the startup sequence.

        Returns:
            RUNNING when the store is serving (even if mirroring partially
            failed), ERROR otherwise
        """
        if self.state != ServiceState.STOPPED:
            logger.warning(f"Start requested while {self.state.value}, ignoring")
            return self.state

        self._set_state(ServiceState.STARTING)
        self.sync_stats['start_time'] = datetime.now()
        session = None
        try:
            self._load_configuration()
            session = self._open_session()
            self._start_store()

            self._set_state(ServiceState.BOOTSTRAPPING)
            self._bootstrap()

            self._set_state(ServiceState.SYNCING)
            if session is not None:
                self._process_queries(session)
            else:
                logger.warning("No source session available, skipping all queries")

            self._set_state(ServiceState.RUNNING)
            logger.info("LDAP in-memory server started and loaded with data")

        except StoreStartError as e:
            logger.error(f"Directory store failed to start: {e}")
            self._set_state(ServiceState.ERROR)
        except Exception as e:
            logger.error(f"Unexpected error during startup: {e}", exc_info=True)
            self._set_state(ServiceState.ERROR)
        finally:
            if session is not None:
                session.close()
            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()
            self._log_sync_summary()

        return self.state

    def stop(self) -> None:
        """Shut the store down. Safe to call when never started or twice."""
        if self.state == ServiceState.STOPPED and (self.store is None or not self.store.is_listening):
            return

        self._set_state(ServiceState.STOPPING)
        try:
            if self.store is not None:
                self.store.shut_down()
        except Exception as e:
            logger.error(f"Error shutting down directory store: {e}")
        finally:
            self._set_state(ServiceState.STOPPED)

    def _load_configuration(self):
        if self.config is None:
            self.config = load_config(self.config_path)
            security_logger.log_configuration_access(self.config_path or 'config.yaml')

    def _open_session(self):
        """Open the source session, or return None when it cannot be opened."""
        if self.client is None:
            source_config = dict(self.config['source'])
            source_config['page_size'] = self.config.get('sync', {}).get('page_size', 250)
            self.client = LDAPClient(source_config)

        try:
            return self.client.connect()
        except LDAPConnectionError as e:
            logger.error(f"Source LDAP connection error: {e}")
            return None

    def _start_store(self):
        logger.info("----- Starting in-memory LDAP server")
        if self.store is None:
            self.store = InMemoryDirectoryStore(self.config['store'])
        self.store.start_listening()

    def _bootstrap(self):
        bootstrap = BootstrapLoader(self.store, self.config.get('store', {}))

        logger.info("----- Importing schema")
        try:
            self.sync_stats['schema_records'] = bootstrap.import_schema()
        except BootstrapError as e:
            logger.error(f"Schema import failed: {e}")

        logger.info("----- Importing org structure")
        try:
            self.sync_stats['hierarchy_records'] = bootstrap.import_hierarchy()
        except BootstrapError as e:
            logger.error(f"Hierarchy import failed: {e}")

    def _process_queries(self, session):
        """Mirror each configured query; one failing query does not stop the rest."""
        sync_config = self.config.get('sync', {})
        driver = PagedQueryDriver(
            self.client.fetch_page,
            transformer=EntryTransformer(sync_config.get('denied_attributes')),
            max_results=sync_config.get('max_results', 10000)
        )
        loader = BulkLoader(sync_config.get('diagnostic_attribute', 'uid'))

        for query in sync_config.get('queries', []):
            details = {'status': 'pending', 'fetched': 0, 'loaded': 0, 'failed': 0, 'skipped': 0}
            self.sync_stats['query_details'][query] = details
            try:
                self._process_query(session, query, driver, loader, details)
                self.sync_stats['queries_processed'] += 1
            except LDAPQueryError as e:
                logger.error(f"Query {query} aborted: {e}")
                details.update(status='failed', error=str(e))
                self.sync_stats['queries_failed'] += 1
            except Exception as e:
                logger.error(f"Unexpected error mirroring query {query}: {e}", exc_info=True)
                details.update(status='failed', error=str(e))
                self.sync_stats['queries_failed'] += 1

    def _process_query(self, session, query: str, driver: PagedQueryDriver,
                       loader: BulkLoader, details: Dict[str, Any]):
        logger.info(f"----- Searching entries for query {query}")
        entries = driver.run(session, query)
        details['fetched'] = len(entries)
        self.sync_stats['entries_fetched'] += len(entries)
        logger.info(f"Found total entries: {len(entries)} for query {query}")

        logger.info(f"----- Importing result set for query {query}")
        report = loader.load(self.store, entries)
        details.update(status='completed', loaded=report.succeeded,
                       failed=report.failed, skipped=report.skipped)
        self.sync_stats['entries_loaded'] += report.succeeded
        self.sync_stats['entries_failed'] += report.failed
        self.sync_stats['entries_skipped'] += report.skipped

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        logger.info("=== Mirror Summary ===")
        logger.info(f"State: {self.state.value}")
        logger.info(f"Total runtime: {stats['runtime_seconds']:.2f} seconds")
        logger.info(f"Schema records: {stats['schema_records']}, "
                    f"hierarchy records: {stats['hierarchy_records']}")
        logger.info(f"Queries processed: {stats['queries_processed']}, "
                    f"failed: {stats['queries_failed']}")
        logger.info(f"Entries fetched: {stats['entries_fetched']}, loaded: {stats['entries_loaded']}, "
                    f"failed: {stats['entries_failed']}, skipped: {stats['entries_skipped']}")

        for query, details in stats['query_details'].items():
            logger.info(f"--- {query}: {details['status']} "
                        f"(fetched {details['fetched']}, loaded {details['loaded']}, "
                        f"failed {details['failed']}, skipped {details['skipped']})")

    def health_check(self) -> Dict[str, Any]:
        """
        Report the service's health.

        Returns:
            Dictionary containing health status and details
        """
        store_listening = self.store is not None and self.store.is_listening
        health_status = {
            'status': 'healthy' if self.state == ServiceState.RUNNING and store_listening else 'unhealthy',
            'timestamp': datetime.now().isoformat(),
            'state': self.state.value,
            'checks': {
                'store': {
                    'status': 'pass' if store_listening else 'fail',
                    'entries': self.store.entry_count() if store_listening else 0
                },
                'queries': {
                    query: details['status'] for query, details in self.sync_stats['query_details'].items()
                }
            }
        }
        if self.sync_stats['queries_failed'] or self.sync_stats['entries_failed']:
            health_status['status'] = 'degraded' if store_listening else 'unhealthy'
        return health_status

    def check_configuration(self) -> Dict[str, Any]:
        """
        Check configuration and source connectivity without starting the store.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        source_config = dict(self.config['source'])
        client = self.client or LDAPClient(source_config)
        if client.test_connection():
            health_status['checks']['source'] = {
                'status': 'pass',
                'message': 'Source LDAP connection successful'
            }
        else:
            health_status['checks']['source'] = {
                'status': 'fail',
                'message': 'Source LDAP connection failed'
            }
            health_status['status'] = 'unhealthy'

        bootstrap = BootstrapLoader(None, self.config.get('store', {}))
        for label, path in (('schema', bootstrap.schema_file), ('hierarchy', bootstrap.hierarchy_file)):
            health_status['checks'][label] = {'status': 'pass', 'path': path}
            try:
                with open(path, 'r', encoding='utf-8'):
                    pass
            except OSError as e:
                health_status['checks'][label] = {'status': 'warn', 'path': path, 'message': str(e)}

        return health_status


def serve_until_signalled(orchestrator: SyncOrchestrator, stop_event: Optional[threading.Event] = None):
    """Block until SIGINT or SIGTERM, then stop the orchestrator."""
    stop_event = stop_event or threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        orchestrator.stop()


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='LDAP Mirror - in-memory directory mirrored from a source LDAP')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Check configuration and source connectivity, then exit')
    parser.add_argument('--once', action='store_true',
                        help='Start, mirror, print the summary and stop instead of serving')

    args = parser.parse_args(argv)

    orchestrator = SyncOrchestrator(config_path=args.config)

    if args.health_check:
        health_status = orchestrator.check_configuration()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    try:
        orchestrator._load_configuration()
        setup_logging(orchestrator.config.get('logging', {}))
    except Exception as e:
        print(f"Configuration error: {e}")
        sys.exit(2)

    state = orchestrator.start()

    if args.once:
        print(json.dumps(orchestrator.health_check(), indent=2))
        orchestrator.stop()
        sys.exit(0 if state == ServiceState.RUNNING else 1)

    if state != ServiceState.RUNNING:
        orchestrator.stop()
        sys.exit(1)

    serve_until_signalled(orchestrator)
    sys.exit(0)


if __name__ == "__main__":
    main()
