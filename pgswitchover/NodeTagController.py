import logging
import time

import yaml

from pgswitchover.ClusterStatus import DEFAULT_PATRONI_CONFIG, parse_tag
from pgswitchover.SwitchoverErrors import ServiceRestartError, TagUpdateError, VerificationError

DEFAULT_SERVICE = 'patroni'
DEFAULT_RESTART_GRACE = 10  # seconds to let the agent rejoin before reading back


def format_bool(value):
    return 'true' if value else 'false'


class NodeTagController:
    """
    Changes the nofailover/nosync tags on the Patroni configuration of a single
    node, restarts its agent so they are picked up, and checks they persisted.
    While it runs, only that node's agent is down; the rest of the cluster is
    expected to keep serving.
    """

    def __init__(self, remote_execution, patroni_config=DEFAULT_PATRONI_CONFIG,
                 service=DEFAULT_SERVICE, restart_grace=DEFAULT_RESTART_GRACE):
        self.remote_executor = remote_execution
        self.patroni_config = patroni_config
        self.service = service
        self.restart_grace = restart_grace
        self.logger = logging.getLogger('switchover')

    def run_command(self, host, command):
        """
        Executes command on the target host.

        :param host: command execution target host
        :param command: command to be executed
        :return: execution result (returncode, stdout, stderr)
        """
        return self.remote_executor.run(host, command)

    def get_update_command(self, no_failover, no_sync):
        """
        Returns the command that rewrites both tags in place, keeping the
        indentation of the lines (tags are nested on the yaml file)
        """
        return ['sudo', 'sed', '-i',
                '-e', "'s/nofailover:.*/nofailover: {}/'".format(format_bool(no_failover)),
                '-e', "'s/nosync:.*/nosync: {}/'".format(format_bool(no_sync)),
                self.patroni_config]

    def get_restart_command(self):
        return ['sudo', 'systemctl', 'restart', self.service]

    def get_is_active_command(self):
        return ['sudo', 'systemctl', 'is-active', '--quiet', self.service]

    def get_read_command(self):
        return ['sudo', 'cat', self.patroni_config]

    def update_tags(self, host, no_failover, no_sync):
        self.logger.info('Updating tags for %s - nofailover: %s, nosync: %s',
                         host, format_bool(no_failover), format_bool(no_sync))
        result = self.run_command(host, self.get_update_command(no_failover, no_sync))
        if result.returncode != 0:
            raise TagUpdateError('Failed to update tags on {} (exit code {}): {}'.format(
                host, result.returncode, result.stderr), node=host)

    def restart_service(self, host):
        self.logger.info('Restarting %s service on %s', self.service, host)
        result = self.run_command(host, self.get_restart_command())
        if result.returncode != 0:
            raise ServiceRestartError('Failed to restart {} on {} (exit code {}): {}'.format(
                self.service, host, result.returncode, result.stderr), node=host)
        result = self.run_command(host, self.get_is_active_command())
        if result.returncode != 0:
            raise ServiceRestartError('{} is not active on {} after the restart'.format(
                self.service, host), node=host)

    def read_tags(self, host):
        """
        Reads the Patroni configuration file of host and returns its tags as a
        (nofailover, nosync) tuple of booleans
        """
        result = self.run_command(host, self.get_read_command())
        if result.returncode != 0 or result.stdout is None:
            raise VerificationError('Could not read {} back from {}'.format(
                self.patroni_config, host), node=host)
        try:
            config = yaml.load(result.stdout, yaml.SafeLoader)
        except yaml.YAMLError as ex:
            raise VerificationError('{} on {} is not valid yaml after the update: {}'.format(
                self.patroni_config, host, ex), node=host)
        if not isinstance(config, dict) or not isinstance(config.get('tags'), dict):
            raise VerificationError('No tags section found on {} of {}'.format(
                self.patroni_config, host), node=host)
        tags = config['tags']
        if 'nofailover' not in tags or 'nosync' not in tags:
            raise VerificationError('nofailover and nosync must be both present on {} of {}'.format(
                self.patroni_config, host), node=host)
        return parse_tag(tags['nofailover']), parse_tag(tags['nosync'])

    def verify_tags(self, host, no_failover, no_sync):
        current = self.read_tags(host)
        if current != (no_failover, no_sync):
            raise VerificationError(
                'Tag update verification failed for {}: expected nofailover: {}, nosync: {}, '
                'found nofailover: {}, nosync: {}'.format(
                    host, format_bool(no_failover), format_bool(no_sync),
                    format_bool(current[0]), format_bool(current[1])), node=host)

    def apply(self, node, no_failover, no_sync):
        """
        Sets the given tags on node (a Node or a hostname). Every step must
        succeed in order: rewrite, restart, read back. Raises TagUpdateError,
        ServiceRestartError or VerificationError on the first one failing,
        without retrying.
        """
        host = getattr(node, 'hostname', node)
        self.update_tags(host, no_failover, no_sync)
        self.restart_service(host)
        if self.restart_grace:
            time.sleep(self.restart_grace)
        self.verify_tags(host, no_failover, no_sync)
        self.logger.info('Successfully updated tags for %s', host)
