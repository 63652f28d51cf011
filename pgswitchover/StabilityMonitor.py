import logging
import time

from pgswitchover.ClusterStatus import is_transient
from pgswitchover.SwitchoverErrors import ConnectivityError, StabilityTimeoutError

DEFAULT_ATTEMPTS = 6
DEFAULT_INTERVAL = 10  # seconds


class StabilityMonitor:
    """
    Polls the cluster status until no node is on a transient state. This is
    the only operation of a switchover that retries, with a fixed number of
    attempts and a fixed wait between them, so a run is bounded by
    attempts * interval on every gate.
    """

    def __init__(self, status_reader, max_attempts=DEFAULT_ATTEMPTS, interval=DEFAULT_INTERVAL):
        self.status_reader = status_reader
        self.max_attempts = max_attempts
        self.interval = interval
        self.logger = logging.getLogger('switchover')

    def poll(self):
        """
        Reads the status once and returns (topology, reason), reason being None
        when the cluster is stable and a description of why it is not otherwise.
        A status with no leader (election window) or that no host could answer
        counts as transient; a malformed status is not handled here.
        """
        try:
            topology = self.status_reader.read(require_leader=False)
        except ConnectivityError as ex:
            return None, str(ex)
        transient = [node for node in topology if is_transient(node)]
        if transient:
            return topology, 'nodes on transient state: {}'.format(
                ', '.join('{} ({})'.format(node.member, node.state) for node in transient))
        if topology.leader is None:
            return topology, '{} leaders found'.format(len(topology.leaders))
        return topology, None

    def wait_for_stability(self, max_attempts=None, interval=None):
        """
        Returns the first stable ClusterTopology observed, or raises
        StabilityTimeoutError after max_attempts transient observations.
        """
        if max_attempts is None:
            max_attempts = self.max_attempts
        if interval is None:
            interval = self.interval
        self.logger.info('Waiting for cluster to stabilize...')
        reason = None
        for attempt in range(1, max_attempts + 1):
            topology, reason = self.poll()
            if reason is None:
                self.logger.info('Cluster is stable')
                return topology
            self.logger.info('Cluster is not stable yet (%s), attempt %s of %s',
                             reason, attempt, max_attempts)
            if attempt < max_attempts:
                time.sleep(interval)
        self.logger.error('Cluster failed to stabilize')
        raise StabilityTimeoutError('Cluster did not stabilize after {} attempts every {} '
                                    'seconds: {}'.format(max_attempts, interval, reason))
