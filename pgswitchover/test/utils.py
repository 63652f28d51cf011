"""Utils for testing pgswitchover."""

import json
import re
import sys

from pgswitchover.RemoteExecution.RemoteExecution import CommandReturn, RemoteExecution
from pgswitchover.Topology import TopologyConfig

CLUSTER = 'pgcluster'
SITE_DOMAINS = {'DC1': 'dc1.example.org', 'DC2': 'dc2.example.org'}


class hide_stderr:
    """Class used to hide the stderr."""

    class FakeStderr:
        """Class used as a fake stderr."""

        def write(self, s):
            """Just do nothing."""
            pass

    def __enter__(self):
        """Store the real stderr and place the fake one."""
        self.real_stderr = sys.stderr
        sys.stderr = self.FakeStderr()

    def __exit__(self, type, value, traceback):
        """Restore the real stderr."""
        sys.stderr = self.real_stderr


class FakeNode:
    """State of a single Patroni member, as the fake cluster keeps it"""

    def __init__(self, hostname, member, site, role, no_failover, no_sync, state='running',
                 lag=0):
        self.hostname = hostname
        self.member = member
        self.site = site
        self.role = role
        self.state = state
        self.lag = lag
        # tags as written on the config file, and as seen by the running agent
        self.file_tags = (no_failover, no_sync)
        self.tags = (no_failover, no_sync)
        self.starting_reads = 0


class FakePatroniCluster(RemoteExecution):
    """
    RemoteExecution that answers the commands a switchover runs (status,
    tag rewrite, agent restart, config read back, switchover, no-op) as a
    Patroni cluster would, recording every command and tag mutation.

    Failures can be injected with:
     * unreachable: hosts where every command fails as if ssh could not connect
     * failures: {(hostname, action): CommandReturn} to return instead of running
       the action ('noop', 'status', 'sed', 'restart', 'is-active', 'cat',
       'switchover')
     * ignore_sed: hosts where the tag rewrite succeeds but changes nothing
     * restart_transient_reads: status reads a restarted node shows as starting
     * election_window: status reads without leader after a switchover
    """

    def __init__(self, nodes, patroni_config='/etc/patroni/patroni.yml', patroni_user='postgres',
                 service='patroni'):
        self.nodes = list(nodes)
        self.patroni_config = patroni_config
        self.patroni_user = patroni_user
        self.service = service
        self.unreachable = set()
        self.failures = dict()
        self.ignore_sed = set()
        self.restart_transient_reads = 0
        self.election_window = 0
        self.leaderless_reads = 0
        self.commands = []
        self.mutations = []
        self.restarts = []

    @classmethod
    def from_sites(cls, sites, **kwargs):
        """
        Builds a cluster from {site: [(role, nofailover, nosync), ...]}. Members
        are named pg<site number><node number>, e.g. pg1001 for the first node of DC1.
        """
        nodes = []
        for site_number, (site, members) in enumerate(sites.items(), start=1):
            for node_number, (role, no_failover, no_sync) in enumerate(members, start=1):
                member = 'pg{}{:03d}'.format(site_number, node_number)
                hostname = '{}.{}'.format(member, SITE_DOMAINS.get(site, site.lower()))
                nodes.append(FakeNode(hostname, member, site, role, no_failover, no_sync))
        return cls(nodes, **kwargs)

    def topology_config(self, **kwargs):
        sites = dict()
        for node in self.nodes:
            sites.setdefault(node.site, []).append(node.hostname)
        return TopologyConfig(CLUSTER, sites, **kwargs)

    def node(self, name):
        for node in self.nodes:
            if name in (node.hostname, node.member):
                return node
        return None

    def hostname(self, member):
        return self.node(member).hostname

    @property
    def leader(self):
        leaders = [node for node in self.nodes if node.role == 'Leader']
        return leaders[0] if len(leaders) == 1 else None

    def tags_of(self, name):
        return self.node(name).tags

    def mutated_hosts(self):
        return [host for host, _, _ in self.mutations]

    def patronictl(self):
        return 'sudo -u {} patronictl -c {}'.format(self.patroni_user, self.patroni_config)

    def action(self, command):
        if command == '/bin/true':
            return 'noop'
        if command == self.patronictl() + ' list --format json':
            return 'status'
        if command.startswith(self.patronictl() + ' switchover '):
            return 'switchover'
        if command.startswith('sudo sed -i '):
            return 'sed'
        if command == 'sudo systemctl restart {}'.format(self.service):
            return 'restart'
        if command == 'sudo systemctl is-active --quiet {}'.format(self.service):
            return 'is-active'
        if command == 'sudo cat {}'.format(self.patroni_config):
            return 'cat'
        return None

    def run(self, host, command):
        command = self.format_command(command)
        self.commands.append((host, command))
        if host in self.unreachable:
            return CommandReturn(255, None, 'ssh: connect to host {} port 22: '
                                            'Connection timed out'.format(host))
        node = self.node(host)
        if node is None:
            return CommandReturn(1, None, 'host is wrong or does not match rules')
        action = self.action(command)
        if action is None:
            return CommandReturn(127, '', 'unexpected command: {}'.format(command))
        if (host, action) in self.failures:
            return self.failures[(host, action)]
        return getattr(self, 'do_' + action.replace('-', '_'))(node, command)

    def do_noop(self, node, command):
        return CommandReturn(0, '', '')

    def do_status(self, node, command):
        leaderless = self.leaderless_reads > 0
        if leaderless:
            self.leaderless_reads -= 1
        rows = []
        for member in self.nodes:
            state = member.state
            if member.starting_reads > 0:
                member.starting_reads -= 1
                state = 'starting'
            role = member.role
            if leaderless and role == 'Leader':
                role = 'Replica'
                state = 'stopping'
            rows.append({'Cluster': CLUSTER, 'Member': member.member, 'Host': member.hostname,
                         'Role': role, 'State': state, 'TL': 3,
                         'Lag in MB': '' if member.role == 'Leader' else member.lag,
                         'Tags': {'nofailover': member.tags[0], 'nosync': member.tags[1]}})
        return CommandReturn(0, json.dumps(rows), '')

    def do_sed(self, node, command):
        no_failover = re.search(r"nofailover: (true|false)/'", command).group(1) == 'true'
        no_sync = re.search(r"nosync: (true|false)/'", command).group(1) == 'true'
        if node.hostname not in self.ignore_sed:
            node.file_tags = (no_failover, no_sync)
        self.mutations.append((node.hostname, no_failover, no_sync))
        return CommandReturn(0, '', '')

    def do_restart(self, node, command):
        node.tags = node.file_tags
        node.starting_reads = self.restart_transient_reads
        self.restarts.append(node.hostname)
        self.recompute_roles()
        return CommandReturn(0, '', '')

    def do_is_active(self, node, command):
        return CommandReturn(0, '', '')

    def do_cat(self, node, command):
        config = ('scope: {}\n'
                  'name: {}\n'
                  'tags:\n'
                  '    nofailover: {}\n'
                  '    nosync: {}\n').format(CLUSTER, node.member,
                                             str(node.file_tags[0]).lower(),
                                             str(node.file_tags[1]).lower())
        return CommandReturn(0, config, '')

    def do_switchover(self, node, command):
        arguments = command.split()
        leader = self.node(arguments[arguments.index('--leader') + 1])
        candidate = self.node(arguments[arguments.index('--candidate') + 1])
        if leader is None or leader.role != 'Leader':
            return CommandReturn(1, '', 'Error: Member is not the leader of cluster')
        if candidate is None or candidate.tags[0]:
            return CommandReturn(1, '', 'Error: candidate is not eligible for failover')
        leader.role = 'Replica'
        candidate.role = 'Leader'
        self.leaderless_reads = self.election_window
        self.recompute_roles()
        return CommandReturn(0, 'Successfully switched over to "{}"'.format(candidate.member), '')

    def recompute_roles(self):
        """The first non-leader eligible for sync is the synchronous standby"""
        sync_found = False
        for node in self.nodes:
            if node.role == 'Leader':
                continue
            if not sync_found and not node.tags[1]:
                node.role = 'Sync Standby'
                sync_found = True
            else:
                node.role = 'Replica'


def standard_cluster(source_nodes=2, target_nodes=2, sync_count=2):
    """
    Cluster with the leader on DC1 and every DC2 node excluded from failover
    and sync. The first sync_count DC1 nodes (leader included) have nosync: false.
    """
    dc1 = []
    for index in range(source_nodes):
        role = 'Leader' if index == 0 else ('Sync Standby' if index == 1 else 'Replica')
        dc1.append((role, False, index >= sync_count))
    dc2 = [('Replica', True, True) for _ in range(target_nodes)]
    cluster = FakePatroniCluster.from_sites({'DC1': dc1, 'DC2': dc2})
    cluster.recompute_roles()
    return cluster
