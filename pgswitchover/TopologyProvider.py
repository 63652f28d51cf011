"""
Strategies to find out which hosts belong to which site of a cluster:
 * static: hosts listed per site on the configuration file
 * prefix: sites identified by a hostname prefix, hosts discovered from the
           live status of a seed host
 * metadata: hosts, locations and roles read from the inventory database
"""

import logging

import pymysql

from pgswitchover.ClusterStatus import (ClusterStatusReader, DEFAULT_PATRONI_CONFIG,
                                        DEFAULT_PATRONI_USER)
from pgswitchover.SwitchoverErrors import TopologyError
from pgswitchover.Topology import LEADER, TopologyConfig

PROVIDERS = ['static', 'prefix', 'metadata']
DEFAULT_METADATA_CONFIG_FILE = '/etc/pgswitchover/metadata.cnf'
METADATA_QUERY = """SELECT n.hostname, n.location, n.cluster_role
                      FROM `databases` d
                      JOIN `nodes` n ON d.host_group = n.host_group
                     WHERE d.database_name = %s
                  ORDER BY n.location, n.hostname"""


class TopologyProvider:
    """
    Base class of the topology strategies. Subclasses implement load(), which
    returns the TopologyConfig of a cluster; resolve() combines it with the
    live status.
    """

    def __init__(self, remote_execution, patroni_config=DEFAULT_PATRONI_CONFIG,
                 patroni_user=DEFAULT_PATRONI_USER):
        self.remote_executor = remote_execution
        self.patroni_config = patroni_config
        self.patroni_user = patroni_user
        self.logger = logging.getLogger('switchover')

    def load(self, cluster_id):
        raise NotImplementedError

    def status_reader(self, topology_config, hosts=None):
        return ClusterStatusReader(self.remote_executor, topology_config, hosts=hosts,
                                   patroni_config=self.patroni_config,
                                   patroni_user=self.patroni_user)

    def resolve(self, cluster_id):
        """
        Returns the live ClusterTopology of the cluster, with every node
        assigned to its site. Raises TopologyError if the configured topology
        is empty or disagrees with the live one.
        """
        topology_config = self.load(cluster_id)
        topology = self.status_reader(topology_config).read()
        return topology_config.check(topology)


class StaticTopologyProvider(TopologyProvider):
    """
    Reads the sites of each cluster from the configuration file:

    clusters:
      pgcluster1:
        sites:
          DC1: ['ab01db01.example.org', 'ab01db02.example.org']
          DC2: ['ab02db01.example.org', 'ab02db02.example.org']
    """

    def __init__(self, remote_execution, clusters, **kwargs):
        super().__init__(remote_execution, **kwargs)
        self.clusters = clusters or {}

    def load(self, cluster_id):
        cluster = self.clusters.get(cluster_id)
        if not isinstance(cluster, dict) or not isinstance(cluster.get('sites'), dict):
            raise TopologyError('Cluster {} has no sites configured'.format(cluster_id))
        sites = dict()
        for site, hosts in cluster['sites'].items():
            if isinstance(hosts, str):
                hosts = [hosts]
            sites[site] = [host for host in (hosts or []) if host]
        return TopologyConfig(cluster_id, sites).validate()


class PrefixTopologyProvider(TopologyProvider):
    """
    Each site is identified by the prefix of the names of its hosts (e.g.
    DC1: ab01). The members are discovered by reading the status from the
    first seed host that answers; domain, if given, is appended to the member
    names to get the hostnames to connect to.
    """

    def __init__(self, remote_execution, prefixes, seed_hosts, domain=None, **kwargs):
        super().__init__(remote_execution, **kwargs)
        self.prefixes = prefixes or {}
        self.seed_hosts = seed_hosts or []
        self.domain = domain

    def hostname(self, member):
        if self.domain:
            return '{}.{}'.format(member, self.domain)
        return member

    def load(self, cluster_id):
        if not self.prefixes:
            raise TopologyError('No site prefixes configured')
        if not self.seed_hosts:
            raise TopologyError('No seed hosts configured to discover cluster {}'.format(
                cluster_id))
        discovery = TopologyConfig(cluster_id, {})
        topology = self.status_reader(discovery, hosts=self.seed_hosts).read()
        sites = {site: [] for site in self.prefixes}
        for node in topology:
            matching = [site for site, prefix in self.prefixes.items()
                        if node.member.startswith(prefix)]
            if len(matching) > 1:
                raise TopologyError('Member {} matches the prefix of sites {}'.format(
                    node.member, ', '.join(matching)), node=node.member)
            if matching:
                sites[matching[0]].append(self.hostname(node.member))
            else:
                self.logger.warning('Member %s does not belong to any configured site',
                                    node.member)
        return TopologyConfig(cluster_id, sites).validate()


class MetadataTopologyProvider(TopologyProvider):
    """
    Reads the hosts of a database from the inventory (metadata) database.
    Connection parameters are read from a my.cnf-like file. The host with
    the Leader role on the inventory is the leader we expect to find live.
    """

    def __init__(self, remote_execution, config_file=DEFAULT_METADATA_CONFIG_FILE,
                 database=None, **kwargs):
        super().__init__(remote_execution, **kwargs)
        self.config_file = config_file
        self.database = database

    def query_metadata_database(self, cluster_id):
        """Returns the inventory rows (dictionaries) of the given database name"""
        connect_args = {'read_default_file': self.config_file}
        if self.database is not None:
            connect_args['database'] = self.database
        try:
            db = pymysql.connect(**connect_args)
        except (pymysql.err.OperationalError, pymysql.err.InternalError) as ex:
            raise TopologyError('Could not connect to the metadata database: {}'.format(ex)) from ex
        try:
            with db.cursor(pymysql.cursors.DictCursor) as cursor:
                try:
                    cursor.execute(METADATA_QUERY, (cluster_id, ))
                except (pymysql.err.ProgrammingError, pymysql.err.InternalError) as ex:
                    raise TopologyError('Could not query the metadata database: {}'.format(
                        ex)) from ex
                rows = cursor.fetchall()
        finally:
            db.close()
        return rows

    def load(self, cluster_id):
        self.logger.info('Finding hosts of %s on the metadata database', cluster_id)
        rows = self.query_metadata_database(cluster_id)
        if not rows:
            raise TopologyError('Database {} was not found on the metadata database'.format(
                cluster_id))
        sites = dict()
        leaders = []
        for row in rows:
            if not row.get('hostname') or not row.get('location'):
                raise TopologyError('Incomplete metadata row for {}: {}'.format(cluster_id, row))
            sites.setdefault(row['location'], []).append(row['hostname'])
            if row.get('cluster_role') == LEADER:
                leaders.append(row)
        if len(leaders) > 1:
            raise TopologyError('More than one leader registered for {}: {}'.format(
                cluster_id, ', '.join(row['hostname'] for row in leaders)))
        leader_host = leaders[0]['hostname'] if leaders else None
        leader_site = leaders[0]['location'] if leaders else None
        topology_config = TopologyConfig(cluster_id, sites, leader_host=leader_host,
                                         leader_site=leader_site).validate()
        self.logger.info('Configuration Summary: %s - %s, leader: %s', cluster_id,
                         ', '.join('{}: {}'.format(site, ' '.join(hosts))
                                   for site, hosts in topology_config.sites.items()),
                         leader_host)
        return topology_config


def get_topology_provider(config, remote_execution):
    """
    Returns the TopologyProvider selected by the "topology" key of the
    configuration dictionary
    """
    provider = config.get('topology', 'static')
    kwargs = {'patroni_config': config.get('patroni_config', DEFAULT_PATRONI_CONFIG),
              'patroni_user': config.get('patroni_user', DEFAULT_PATRONI_USER)}
    if provider == 'static':
        return StaticTopologyProvider(remote_execution, config.get('clusters'), **kwargs)
    elif provider == 'prefix':
        return PrefixTopologyProvider(remote_execution, config.get('prefixes'),
                                      config.get('seed_hosts'), domain=config.get('domain'),
                                      **kwargs)
    elif provider == 'metadata':
        metadata = config.get('metadata') or {}
        return MetadataTopologyProvider(remote_execution,
                                        config_file=metadata.get('config_file',
                                                                 DEFAULT_METADATA_CONFIG_FILE),
                                        database=metadata.get('database'), **kwargs)
    raise TopologyError('Unknown topology provider "{}", valid ones are: {}'.format(
        provider, ', '.join(PROVIDERS)))
