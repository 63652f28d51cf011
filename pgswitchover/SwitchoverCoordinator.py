"""
Orchestration of a Patroni leadership migration from one site to another.

A run goes through these phases, in order, and stops on the first error:
 1. PREP_TARGET: target site nodes become eligible for failover and sync
 2. PREP_SOURCE: source site non-leader nodes are excluded from both
 3. ELECT: leadership is transferred to the first node of the target site
 4. DEMOTE_OLD_LEADER: the old leader is excluded from both
 5. REBALANCE_SYNC: as many target nodes as the source had are left on sync
 6. FINALIZE_SOURCE: every source site node is excluded from both
Every tag change is read back and followed by a wait for the cluster to be
stable. Nothing is rolled back on failure: the result records how far the
run got so it can be finished or reverted by hand.
"""

from collections import namedtuple
import logging
import time

import arrow

from pgswitchover.ClusterStatus import (ClusterStatusReader, DEFAULT_PATRONI_CONFIG,
                                        DEFAULT_PATRONI_USER, is_transient, patronictl_command)
from pgswitchover.NodeTagController import (DEFAULT_RESTART_GRACE, DEFAULT_SERVICE,
                                            NodeTagController)
from pgswitchover.PreflightChecker import PreflightChecker
from pgswitchover.StabilityMonitor import DEFAULT_ATTEMPTS, DEFAULT_INTERVAL, StabilityMonitor
from pgswitchover.SwitchoverErrors import (ElectionCommandError, ServiceRestartError,
                                           SwitchoverError, TopologyError, VerificationError)
from pgswitchover.Topology import LEADER, SYNC_STANDBY, TagState, format_topology

PREFLIGHT = 'PREFLIGHT'
PREP_TARGET = 'PREP_TARGET'
PREP_SOURCE = 'PREP_SOURCE'
ELECT = 'ELECT'
DEMOTE_OLD_LEADER = 'DEMOTE_OLD_LEADER'
REBALANCE_SYNC = 'REBALANCE_SYNC'
FINALIZE_SOURCE = 'FINALIZE_SOURCE'
PHASES = [PREP_TARGET, PREP_SOURCE, ELECT, DEMOTE_OLD_LEADER, REBALANCE_SYNC, FINALIZE_SOURCE]

DONE = 'DONE'
ABORTED = 'ABORTED'

DEFAULT_ELECTION_WAIT = 30  # seconds between the switchover command and the first poll
FAILED_STATES = ['stopped', 'start failed', 'crashed']
DATE_FORMAT = 'YYYY-MM-DD HH:mm:ss'

SwitchoverPlan = namedtuple('SwitchoverPlan', ['source_site', 'target_site', 'current_leader',
                                               'candidate_leader', 'preserved_sync_count'])
Step = namedtuple('Step', ['phase', 'node', 'description'])


class SwitchoverResult:
    """Outcome of a run: DONE, or ABORTED with the error and the steps already applied"""

    def __init__(self, status, phase, steps, plan=None, error=None, started=None, finished=None):
        self.status = status
        self.phase = phase
        self.steps = steps
        self.plan = plan
        self.error = error
        self.started = started
        self.finished = finished

    @property
    def ok(self):
        return self.status == DONE

    @property
    def reason(self):
        if self.error is None:
            return None
        return '{}: {}'.format(self.error.kind, self.error)

    def summary(self):
        lines = []
        if self.ok:
            lines.append('SWITCHOVER COMPLETED')
        else:
            lines.append('SWITCHOVER ABORTED on phase {}'.format(self.phase))
            lines.append('Reason: {}'.format(self.reason))
            if self.error.node is not None:
                lines.append('Node: {}'.format(self.error.node))
        if self.plan is not None:
            lines.append('Source DC: {}'.format(self.plan.source_site))
            lines.append('Target DC: {}'.format(self.plan.target_site))
            lines.append('Old leader: {}'.format(self.plan.current_leader.member))
            lines.append('Candidate leader: {}'.format(self.plan.candidate_leader.member))
        if self.started is not None:
            lines.append('Started (UTC): {}'.format(self.started.format(DATE_FORMAT)))
            if self.finished is not None:
                lines.append('Duration: {}'.format(
                    self.finished.humanize(self.started, only_distance=True)))
        if not self.steps:
            lines.append('No change was applied to the cluster')
        else:
            lines.append('Changes applied ({}):'.format(len(self.steps)))
            for step in self.steps:
                lines.append('  [{}] {}: {}'.format(step.phase, step.node, step.description))
        return lines


class HealthReport:
    """Pass/fail results of the read-only pre-switchover checks"""

    def __init__(self, source_site, target_site):
        self.source_site = source_site
        self.target_site = target_site
        self.checks = []
        self.logger = logging.getLogger('switchover')

    def add_check(self, check, passed, message):
        self.checks.append({'check': check, 'passed': passed, 'message': message})
        if passed:
            self.logger.info('✓ %s: %s', check, message)
        else:
            self.logger.error('✗ %s: %s', check, message)

    @property
    def passed(self):
        return len(self.checks) > 0 and all(check['passed'] for check in self.checks)

    def failures(self):
        return [check for check in self.checks if not check['passed']]

    def summary(self):
        passed = len([check for check in self.checks if check['passed']])
        lines = ['SIMULATION SUMMARY: {}/{} checks passed'.format(passed, len(self.checks)),
                 'Source DC: {}'.format(self.source_site),
                 'Target DC: {}'.format(self.target_site)]
        if self.passed:
            lines.append('All pre-checks completed successfully!')
        for check in self.failures():
            lines.append('Failed: {}: {}'.format(check['check'], check['message']))
        return lines


class SwitchoverCoordinator:
    """
    Moves the leadership of a Patroni cluster from source_site to target_site.
    The topology config is fixed at construction; the live status is read again
    at the beginning of every phase because every phase changes what the next
    one sees.
    """

    def __init__(self, topology_config, remote_execution, options=None):
        options = options or {}
        self.topology_config = topology_config
        self.remote_executor = remote_execution
        self.patroni_config = options.get('patroni_config', DEFAULT_PATRONI_CONFIG)
        self.patroni_user = options.get('patroni_user', DEFAULT_PATRONI_USER)
        self.election_wait = options.get('election_wait', DEFAULT_ELECTION_WAIT)
        self.max_lag = options.get('max_lag')
        self.status_reader = ClusterStatusReader(remote_execution, topology_config,
                                                 patroni_config=self.patroni_config,
                                                 patroni_user=self.patroni_user)
        self.tag_controller = NodeTagController(remote_execution,
                                                patroni_config=self.patroni_config,
                                                service=options.get('patroni_service',
                                                                    DEFAULT_SERVICE),
                                                restart_grace=options.get('restart_grace',
                                                                          DEFAULT_RESTART_GRACE))
        self.monitor = StabilityMonitor(self.status_reader,
                                        max_attempts=options.get('stability_attempts',
                                                                 DEFAULT_ATTEMPTS),
                                        interval=options.get('stability_interval',
                                                             DEFAULT_INTERVAL))
        self.preflight = PreflightChecker(remote_execution)
        self.logger = logging.getLogger('switchover')
        self.phase = None
        self.steps = []
        self.plan = None

    def log_topology(self, title, topology):
        self.logger.info(title)
        for line in format_topology(topology):
            self.logger.info('  %s', line)

    def check_sites(self, source_site, target_site):
        if source_site == target_site:
            raise TopologyError('Source and Target DC cannot be the same')
        for site in [source_site, target_site]:
            if site not in self.topology_config.sites:
                raise TopologyError('Site {} is not configured for cluster {}. Valid values '
                                    'are: {}'.format(site, self.topology_config.cluster_id,
                                                     ', '.join(self.topology_config.sites)))

    @staticmethod
    def select_candidate(topology, target_site):
        """The new leader is always the first node of the target site, in status order"""
        candidates = topology.in_site(target_site)
        if len(candidates) == 0:
            raise TopologyError('No node of site {} found to become the leader'.format(
                target_site))
        return candidates[0]

    def apply(self, node, no_failover, no_sync):
        """
        Changes the tags of a node, records it, and waits for the cluster to settle.
        If the file was rewritten but the restart or the read back failed, the
        node is recorded as changed but not verified.
        """
        description = 'nofailover: {}, nosync: {}'.format(str(no_failover).lower(),
                                                          str(no_sync).lower())
        try:
            self.tag_controller.apply(node, no_failover, no_sync)
        except (ServiceRestartError, VerificationError):
            self.steps.append(Step(self.phase, node.hostname,
                                   description + ' (rewritten, not verified)'))
            raise
        self.steps.append(Step(self.phase, node.hostname, description))
        return self.monitor.wait_for_stability()

    def prepare(self, source_site, target_site):
        """
        Reads the initial state of the cluster and checks it is one we can
        operate on, then that every node we will touch is reachable.
        Nothing is changed here.
        """
        self.check_sites(source_site, target_site)
        snapshot = self.status_reader.read()
        self.topology_config.check(snapshot)
        self.log_topology('Current cluster status:', snapshot)
        leader = snapshot.leader
        if leader.site_id != source_site:
            raise TopologyError('The current leader {} is on {}, not on the source site {}'.format(
                leader.member, leader.site_id, source_site), node=leader.hostname)
        self.logger.info('Current leader: %s', leader.member)
        nodes = snapshot.in_site(source_site) + snapshot.in_site(target_site)
        self.preflight.verify_reachable(nodes)
        return snapshot

    def prep_target(self, target_site, preserved_sync_count):
        no_sync = preserved_sync_count == 0
        self.logger.info('Step 1: Updating target DC (%s) nodes - setting nofailover to false '
                         'and nosync to %s', target_site, str(no_sync).lower())
        topology = self.status_reader.read()
        for node in topology.in_site(target_site):
            self.apply(node, False, no_sync)
        self.logger.info('Target DC nodes updated successfully')

    def prep_source(self, source_site, current_leader):
        self.logger.info('Step 2: Updating source DC (%s) non-leader nodes - setting nofailover '
                         'and nosync to true', source_site)
        topology = self.status_reader.read()
        for node in topology.in_site(source_site):
            if node.member == current_leader.member or node.role == LEADER:
                self.logger.info('Leaving leader %s untouched', node.member)
                continue
            self.apply(node, True, True)
        self.logger.info('Source DC non-leader nodes updated successfully')

    def transfer_leadership(self, current_leader, candidate):
        self.logger.info('Initiating switchover from %s to %s...', current_leader.member,
                         candidate.member)
        command = patronictl_command(self.patroni_config, self.patroni_user) + \
            ['switchover', '--force', '--leader', current_leader.member,
             '--candidate', candidate.member]
        result = self.remote_executor.run(current_leader.hostname, command)
        if result.returncode != 0:
            raise ElectionCommandError('Switchover command failed (exit code {}): {}'.format(
                result.returncode, result.stderr or result.stdout), node=candidate.hostname)
        if result.stdout and 'failed' in result.stdout.lower():
            raise ElectionCommandError('Switchover command failed: {}'.format(
                result.stdout.strip()), node=candidate.hostname)
        self.steps.append(Step(self.phase, candidate.hostname,
                               'leadership transferred from {}'.format(current_leader.member)))

    def elect(self, source_site, target_site, current_leader, preserved_sync_count):
        self.logger.info('Step 3: Selecting target node for leadership')
        topology = self.status_reader.read()
        candidate = self.select_candidate(topology, target_site)
        self.plan = SwitchoverPlan(source_site=source_site, target_site=target_site,
                                   current_leader=current_leader, candidate_leader=candidate,
                                   preserved_sync_count=preserved_sync_count)
        self.logger.info('Selected new leader: %s', candidate.member)
        if candidate.tags.no_failover:
            raise VerificationError('Candidate {} still has nofailover: true'.format(
                candidate.member), node=candidate.hostname)
        self.preflight.verify_reachable([candidate])
        self.transfer_leadership(current_leader, candidate)
        if self.election_wait:
            time.sleep(self.election_wait)
        topology = self.monitor.wait_for_stability()
        leader = topology.leader
        if leader.member != candidate.member:
            raise ElectionCommandError('After the switchover the leader is {}, not {}'.format(
                leader.member, candidate.member), node=candidate.hostname)
        self.log_topology('New cluster status after switchover:', topology)
        return self.plan

    def demote_old_leader(self, plan):
        self.logger.info('Step 4: Updating old leader settings')
        topology = self.status_reader.read()
        node = topology.get(plan.current_leader.member)
        if node is None:
            raise TopologyError('Old leader {} is no longer on the cluster status'.format(
                plan.current_leader.member), node=plan.current_leader.hostname)
        if node.role == LEADER:
            raise ElectionCommandError('{} is still the leader'.format(node.member),
                                       node=node.hostname)
        self.apply(node, True, True)
        self.logger.info('Old leader updated successfully')

    def rebalance_sync(self, plan):
        count = plan.preserved_sync_count
        if count == 0:
            self.logger.info('Step 5: No nodes with nosync: false in source DC, nothing to '
                             'rebalance')
            return
        self.logger.info('Step 5: Found %s nodes with nosync: false in source DC', count)
        topology = self.status_reader.read()
        nodes = topology.non_leaders_in_site(plan.target_site)
        if count > len(nodes):
            self.logger.warning('Only %s non-leader nodes on %s, %s of them will be kept on '
                                'sync instead of %s', len(nodes), plan.target_site,
                                len(nodes), count)
        for index, node in enumerate(nodes):
            self.apply(node, False, index >= count)
        self.logger.info('Updated target DC nodes configuration successfully')

    def finalize_source(self, plan):
        self.logger.info('Step 6: Final update of source DC nodes - setting nofailover and '
                         'nosync to true')
        topology = self.status_reader.read()
        for node in topology.in_site(plan.source_site):
            if node.role == LEADER:
                raise VerificationError('{} of the source site is the leader again'.format(
                    node.member), node=node.hostname)
            self.apply(node, True, True)
        self.logger.info('Source DC nodes final update completed successfully')

    def confirm(self, plan):
        """Final check: a single leader on the target site, source site fully demoted"""
        topology = self.monitor.wait_for_stability()
        leader = topology.leader
        if leader.site_id != plan.target_site:
            raise VerificationError('Final leader {} is on {}, not on {}'.format(
                leader.member, leader.site_id, plan.target_site), node=leader.hostname)
        for node in topology.in_site(plan.source_site):
            if node.tags != TagState(no_failover=True, no_sync=True):
                raise VerificationError('{} does not have nofailover and nosync set to '
                                        'true'.format(node.member), node=node.hostname)
        self.log_topology('Final cluster status:', topology)
        return topology

    def abort(self, error, started):
        self.logger.error('Switchover aborted on phase %s: %s%s: %s', self.phase, error.kind,
                          '' if error.node is None else ' on ' + str(error.node), error)
        if self.steps:
            self.logger.error('No rollback is attempted; these changes remain applied:')
            for step in self.steps:
                self.logger.error('  [%s] %s: %s', step.phase, step.node, step.description)
        else:
            self.logger.error('No change was applied to the cluster')
        return SwitchoverResult(ABORTED, self.phase, list(self.steps), plan=self.plan,
                                error=error, started=started, finished=arrow.utcnow())

    def run(self, source_site, target_site):
        """
        Executes the whole switchover. Returns a SwitchoverResult; switchover
        errors never escape, they abort the run at the phase they happened.
        """
        started = arrow.utcnow()
        self.phase = PREFLIGHT
        self.steps = []
        self.plan = None
        try:
            snapshot = self.prepare(source_site, target_site)
            current_leader = snapshot.leader
            preserved_sync_count = snapshot.sync_enabled_count(source_site)
            self.logger.info('%s nodes of %s have nosync: false', preserved_sync_count,
                             source_site)

            self.phase = PREP_TARGET
            self.prep_target(target_site, preserved_sync_count)
            self.phase = PREP_SOURCE
            self.prep_source(source_site, current_leader)
            self.phase = ELECT
            plan = self.elect(source_site, target_site, current_leader, preserved_sync_count)
            self.phase = DEMOTE_OLD_LEADER
            self.demote_old_leader(plan)
            self.phase = REBALANCE_SYNC
            self.rebalance_sync(plan)
            self.phase = FINALIZE_SOURCE
            self.finalize_source(plan)
            self.confirm(plan)
        except SwitchoverError as ex:
            return self.abort(ex, started)
        return SwitchoverResult(DONE, self.phase, list(self.steps), plan=plan,
                                started=started, finished=arrow.utcnow())

    def simulate(self, source_site, target_site):
        """
        Runs the read-only health checks a switchover depends on and returns a
        HealthReport. No tag, service or leadership is changed.
        """
        report = HealthReport(source_site, target_site)
        try:
            self.check_sites(source_site, target_site)
        except TopologyError as ex:
            report.add_check('Sites', False, str(ex))
            return report
        report.add_check('Sites', True, 'Source DC: {}, Target DC: {}'.format(source_site,
                                                                            target_site))
        try:
            topology = self.status_reader.read()
        except SwitchoverError as ex:
            report.add_check('Cluster status', False, str(ex))
            return report
        report.add_check('Cluster status', True, '{} members found'.format(len(topology)))

        try:
            self.topology_config.check(topology)
            report.add_check('Topology', True, 'Configured sites match the cluster status')
        except TopologyError as ex:
            report.add_check('Topology', False, str(ex))

        leader = topology.leader
        report.add_check('Leader', leader.site_id == source_site,
                         'Current leader found: {} ({})'.format(leader.member, leader.site_id))

        sync_standbys = [node.member for node in topology if node.role == SYNC_STANDBY]
        if sync_standbys:
            report.add_check('Sync standby', True,
                             'Sync Standby node found: {}'.format(', '.join(sync_standbys)))
        else:
            report.add_check('Sync standby', False, 'No Sync Standby node found')

        nodes = topology.in_site(source_site) + topology.in_site(target_site)
        for node in nodes:
            problems = []
            if is_transient(node) or node.state.lower() in FAILED_STATES:
                problems.append('unexpected state')
            if self.max_lag is not None and node.replication_lag is not None \
                    and node.replication_lag > self.max_lag:
                problems.append('lag over {} MB'.format(self.max_lag))
            lag = '-' if node.replication_lag is None else '{:g} MB'.format(node.replication_lag)
            message = 'State: {}, Role: {}, Lag: {}'.format(node.state, node.role, lag)
            if problems:
                message = '{} ({})'.format(message, ', '.join(problems))
            report.add_check('Node {}'.format(node.member), not problems, message)

        try:
            candidate = self.select_candidate(topology, target_site)
            report.add_check('Target candidate', True,
                             'Selected new leader would be {}'.format(candidate.member))
        except TopologyError as ex:
            report.add_check('Target candidate', False, str(ex))

        self.logger.info('Checking SSH connectivity...')
        for node in nodes:
            reachable = self.preflight.check_connection(node.hostname)
            report.add_check('Connection {}'.format(node.hostname), reachable,
                             'Connection successful' if reachable else 'Cannot connect')

        for line in report.summary():
            self.logger.info(line)
        return report
