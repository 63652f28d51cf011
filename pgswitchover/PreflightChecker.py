import logging

from pgswitchover.SwitchoverErrors import ConnectivityError

NOOP_COMMAND = '/bin/true'


class PreflightChecker:
    """Checks every node about to be changed can be reached before changing any of them"""

    def __init__(self, remote_execution):
        self.remote_executor = remote_execution
        self.logger = logging.getLogger('switchover')

    def check_connection(self, host):
        """Returns True if a no-op command can be run on host, False otherwise"""
        if not host:
            self.logger.error('Empty node parameter provided for verification')
            return False
        self.logger.info('Verifying connection to node: %s', host)
        result = self.remote_executor.run(host, NOOP_COMMAND)
        if result.returncode != 0:
            self.logger.error('Failed to connect to %s: %s', host, result.stderr)
            return False
        self.logger.info('Successfully connected to %s', host)
        return True

    def verify_reachable(self, nodes):
        """
        Raises ConnectivityError for the first node (Node or hostname) that
        cannot be reached. Nothing is changed on any host.
        """
        for node in nodes:
            host = getattr(node, 'hostname', node)
            if not self.check_connection(host):
                raise ConnectivityError('Cannot connect to {}'.format(host), node=host)
