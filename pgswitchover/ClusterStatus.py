import json
import logging
import numbers

from pgswitchover.SwitchoverErrors import ConnectivityError, StatusParseError
from pgswitchover.Topology import (ClusterTopology, Node, TagState,
                                   LEADER, SYNC_STANDBY, REPLICA, UNKNOWN)

DEFAULT_PATRONI_CONFIG = '/etc/patroni/patroni.yml'
DEFAULT_PATRONI_USER = 'postgres'
REQUIRED_FIELDS = ['Member', 'Role', 'State']
TRANSIENT_STATES = ['starting', 'stopping', 'initiating']


def patronictl_command(patroni_config=DEFAULT_PATRONI_CONFIG, patroni_user=DEFAULT_PATRONI_USER):
    """Returns the list of arguments needed to run patronictl as the service user"""
    return ['sudo', '-u', patroni_user, 'patronictl', '-c', patroni_config]


def classify_role(role):
    """
    Maps the role text of a status row to one of the known roles. A leader of
    any kind wins over a synchronous standby, which wins over a plain replica.
    """
    if not isinstance(role, str):
        return UNKNOWN
    text = role.lower()
    for known_role in [LEADER, SYNC_STANDBY, REPLICA]:
        if known_role.lower() in text:
            return known_role
    return UNKNOWN


def parse_tag(value):
    """Tags not set at all are false, the same way Patroni treats them"""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == 'true'
    return False


def parse_lag(value):
    """Returns the replication lag in MB as a float, or None if unknown/not applicable"""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, numbers.Number):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def is_transient(node):
    state = (node.state or '').lower()
    return any(transient in state for transient in TRANSIENT_STATES)


def extract_json_list(raw):
    """
    Returns the first json list found on the output, or None. sudo, cumin or
    patronictl may print warning lines around it, some of them starting with
    a bracket too (e.g. "[sudo] password for"), so the document is searched
    for between a line starting with "[" and a later line ending with "]".
    """
    lines = raw.splitlines()
    starts = [index for index, line in enumerate(lines) if line.lstrip().startswith('[')]
    ends = [index for index, line in enumerate(lines) if line.rstrip().endswith(']')]
    for start in starts:
        for end in [end for end in ends if end >= start]:
            try:
                rows = json.loads('\n'.join(lines[start:end + 1]))
            except ValueError:
                continue
            if isinstance(rows, list):
                return rows
    return None


def parse_status(raw, topology_config, require_leader=True):
    """
    Parses the json output of "patronictl list --format json" into a
    ClusterTopology, assigning every member to its configured site.
    The same input always produces the same topology; nothing is read from
    anywhere else.
    Raises StatusParseError if the document does not follow the expected
    schema or (unless require_leader is False) if it has not exactly one leader.
    """
    if raw is None or not raw.strip():
        raise StatusParseError('The cluster status output was empty')
    rows = extract_json_list(raw)
    if rows is None:
        raise StatusParseError('The cluster status output has no valid json list: {}'.format(
            raw.strip()[:200]))

    nodes = []
    members = set()
    for row in rows:
        if not isinstance(row, dict):
            raise StatusParseError('Unexpected cluster status row: {}'.format(row))
        for field in REQUIRED_FIELDS:
            if field not in row:
                raise StatusParseError('Cluster status row is missing "{}": {}'.format(field, row))
        member = row['Member']
        if not isinstance(member, str) or not member:
            raise StatusParseError('Invalid member name on cluster status row: {}'.format(row))
        if member in members:
            raise StatusParseError('Member {} is listed twice on the cluster status'.format(member))
        members.add(member)
        host = row.get('Host')
        site, hostname = topology_config.locate(member, host)
        tags = row.get('Tags') or {}
        if not isinstance(tags, dict):
            raise StatusParseError('Tags of {} are not a mapping: {}'.format(member, tags))
        nodes.append(Node(hostname=hostname if hostname is not None else member,
                          member=member,
                          site_id=site,
                          role=classify_role(row['Role']),
                          state=str(row['State']),
                          replication_lag=parse_lag(row.get('Lag in MB')),
                          tags=TagState(no_failover=parse_tag(tags.get('nofailover')),
                                        no_sync=parse_tag(tags.get('nosync')))))

    topology = ClusterTopology(nodes)
    if require_leader:
        leaders = topology.leaders
        if len(leaders) == 0:
            raise StatusParseError('No leader found on the cluster status')
        if len(leaders) > 1:
            raise StatusParseError('More than one leader found on the cluster status: {}'.format(
                ', '.join(node.member for node in leaders)))
    return topology


class ClusterStatusReader:
    """
    Reads the status of the Patroni cluster from any of its reachable hosts
    """

    def __init__(self, remote_execution, topology_config, hosts=None,
                 patroni_config=DEFAULT_PATRONI_CONFIG, patroni_user=DEFAULT_PATRONI_USER):
        self.remote_executor = remote_execution
        self.topology_config = topology_config
        self.hosts = hosts
        self.patroni_config = patroni_config
        self.patroni_user = patroni_user
        self.logger = logging.getLogger('switchover')

    @property
    def status_command(self):
        return patronictl_command(self.patroni_config, self.patroni_user) + \
            ['list', '--format', 'json']

    def candidate_hosts(self):
        if self.hosts is not None:
            return list(self.hosts)
        return self.topology_config.hosts()

    def read_raw(self):
        """
        Runs the status command on the first host that answers and returns
        (host, output). Raises ConnectivityError if no host could run it.
        """
        hosts = self.candidate_hosts()
        for host in hosts:
            result = self.remote_executor.run(host, self.status_command)
            if result.returncode == 0 and result.stdout:
                return host, result.stdout
            self.logger.debug('Could not read the cluster status from %s (exit code %s): %s',
                              host, result.returncode, result.stderr)
        raise ConnectivityError('Could not read the cluster status from any of: {}'.format(
            ', '.join(hosts)))

    def read(self, require_leader=True):
        _, raw = self.read_raw()
        return parse_status(raw, self.topology_config, require_leader=require_leader)
