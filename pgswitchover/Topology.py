"""
Data model of a Patroni cluster spread over two sites: the nodes as reported
by the live status, their tags, and the static site to hostname mapping the
rest of the tooling is configured with.
"""

from collections import namedtuple
import ipaddress
from types import MappingProxyType

from pgswitchover.SwitchoverErrors import TopologyError

LEADER = 'Leader'
SYNC_STANDBY = 'Sync Standby'
REPLICA = 'Replica'
UNKNOWN = 'Unknown'
ROLES = [LEADER, SYNC_STANDBY, REPLICA, UNKNOWN]

TagState = namedtuple('TagState', ['no_failover', 'no_sync'])

# hostname: network name used to run commands on the node
# member: Patroni member name, as used by patronictl
# site_id: site it belongs to, None if it is not configured on any
Node = namedtuple('Node', ['hostname', 'member', 'site_id', 'role', 'state',
                           'replication_lag', 'tags'])


def short_name(hostname):
    """Returns the hostname without its domain (and without a trailing :port)"""
    if hostname is None:
        return None
    address = hostname.rsplit(':', 1)[0] if hostname.count(':') == 1 else hostname
    try:
        ipaddress.ip_address(address)
        return address  # addresses are compared as a whole
    except ValueError:
        return address.split('.')[0]


class ClusterTopology:
    """
    Ordered, read-only collection of the nodes on a single status read.
    The order is the one of the status output, and it is the order every
    per-site iteration follows.
    """

    def __init__(self, nodes):
        self._nodes = tuple(nodes)

    def __iter__(self):
        return iter(self._nodes)

    def __len__(self):
        return len(self._nodes)

    def __eq__(self, other):
        return isinstance(other, ClusterTopology) and self._nodes == other._nodes

    def __repr__(self):
        return 'ClusterTopology({!r})'.format(list(self._nodes))

    @property
    def nodes(self):
        return self._nodes

    @property
    def leaders(self):
        return [node for node in self._nodes if node.role == LEADER]

    @property
    def leader(self):
        """The only leader of the cluster, or None if there is not exactly one"""
        leaders = self.leaders
        if len(leaders) != 1:
            return None
        return leaders[0]

    def in_site(self, site_id):
        return [node for node in self._nodes if node.site_id == site_id]

    def non_leaders_in_site(self, site_id):
        return [node for node in self.in_site(site_id) if node.role != LEADER]

    def get(self, hostname):
        """Returns the node with the given hostname or member name, or None"""
        for node in self._nodes:
            if hostname in (node.hostname, node.member):
                return node
        return None

    def sync_enabled_count(self, site_id):
        """Number of nodes of the site eligible for synchronous replication"""
        return len([node for node in self.in_site(site_id) if not node.tags.no_sync])


class TopologyConfig:
    """
    Immutable description of which hosts belong to which site for a given
    cluster, and optionally which host/site an external source believes is
    the current leader.
    """

    def __init__(self, cluster_id, sites, leader_host=None, leader_site=None):
        self._cluster_id = cluster_id
        self._sites = MappingProxyType({site: tuple(hosts) for site, hosts in sites.items()})
        self._leader_host = leader_host
        self._leader_site = leader_site

    def __repr__(self):
        return 'TopologyConfig({!r}, {!r}, leader_host={!r}, leader_site={!r})'.format(
            self._cluster_id, dict(self._sites), self._leader_host, self._leader_site)

    @property
    def cluster_id(self):
        return self._cluster_id

    @property
    def sites(self):
        return self._sites

    @property
    def leader_host(self):
        return self._leader_host

    @property
    def leader_site(self):
        return self._leader_site

    def hosts(self):
        """All configured hosts, the known leader first, then in site order"""
        hosts = []
        if self._leader_host is not None:
            hosts.append(self._leader_host)
        for site_hosts in self._sites.values():
            for host in site_hosts:
                if host not in hosts:
                    hosts.append(host)
        return hosts

    def validate(self):
        """Raises TopologyError if there are no sites, or any of them has no hosts"""
        if len(self._sites) == 0:
            raise TopologyError('No sites configured for cluster {}'.format(self._cluster_id))
        for site, hosts in self._sites.items():
            if len(hosts) == 0:
                raise TopologyError('Site {} of cluster {} has no hosts'.format(
                    site, self._cluster_id))
        seen = dict()
        for site, hosts in self._sites.items():
            for host in hosts:
                if short_name(host) in seen and seen[short_name(host)] != site:
                    raise TopologyError('Host {} is configured on both {} and {}'.format(
                        host, seen[short_name(host)], site))
                seen[short_name(host)] = site
        if self._leader_host is not None and self._leader_site is not None \
                and self.site_of(self._leader_host) not in (None, self._leader_site):
            raise TopologyError('Leader {} is said to be on {}, but it is configured on {}'.format(
                self._leader_host, self._leader_site, self.site_of(self._leader_host)))
        return self

    def locate(self, member, host=None):
        """
        Matches a status row (Patroni member name and its address) against the
        configured hosts. Returns (site, hostname), or (None, None) if unknown.
        """
        candidates = [name for name in (member, host) if name]
        for site, hosts in self._sites.items():
            for configured in hosts:
                for name in candidates:
                    if configured == name or short_name(configured) == short_name(name):
                        return site, configured
        return None, None

    def site_of(self, hostname):
        return self.locate(hostname)[0]

    def check(self, topology):
        """
        Compares this config with a live ClusterTopology. Raises TopologyError
        if a site has no node on the live status, or if the leader the config
        was built with is not the live one.
        """
        for site in self._sites:
            if len(topology.in_site(site)) == 0:
                raise TopologyError('None of the hosts of site {} ({}) was found on the '
                                    'cluster status'.format(site, ', '.join(self._sites[site])))
        leader = topology.leader
        if leader is None:
            raise TopologyError('The cluster status does not show exactly one leader')
        if self._leader_host is not None and \
                short_name(self._leader_host) not in (short_name(leader.hostname),
                                                      short_name(leader.member)):
            raise TopologyError('Configured leader is {}, but the cluster reports {}'.format(
                self._leader_host, leader.member), node=leader.hostname)
        if self._leader_site is not None and leader.site_id != self._leader_site:
            raise TopologyError('Configured leader site is {}, but the leader {} is on {}'.format(
                self._leader_site, leader.member, leader.site_id), node=leader.hostname)
        return topology


def format_topology(topology):
    """Returns a list of human-readable lines, one per node, for logging"""
    lines = []
    for node in topology:
        if node.replication_lag is None:
            lag = '-'
        else:
            lag = '{:g} MB'.format(node.replication_lag)
        lines.append('{} ({}) - Site: {}, Role: {}, State: {}, Lag: {}, '
                     'nofailover: {}, nosync: {}'.format(
                         node.member, node.hostname, node.site_id, node.role, node.state,
                         lag, str(node.tags.no_failover).lower(),
                         str(node.tags.no_sync).lower()))
    return lines
