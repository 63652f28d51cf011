"""Tests for StabilityMonitor class."""
import unittest
from unittest.mock import MagicMock, patch

from pgswitchover.ClusterStatus import ClusterStatusReader
from pgswitchover.StabilityMonitor import StabilityMonitor
from pgswitchover.SwitchoverErrors import ConnectivityError, StabilityTimeoutError
from pgswitchover.test.utils import standard_cluster


class TestStabilityMonitor(unittest.TestCase):

    def setUp(self):
        self.cluster = standard_cluster()
        self.reader = ClusterStatusReader(self.cluster, self.cluster.topology_config())

    def status_reads(self):
        return len([command for _, command in self.cluster.commands
                    if self.cluster.action(command) == 'status'])

    @patch('pgswitchover.StabilityMonitor.time.sleep')
    def test_stable_on_first_poll(self, sleep_mock):
        monitor = StabilityMonitor(self.reader, max_attempts=3, interval=10)
        topology = monitor.wait_for_stability()
        self.assertEqual('pg1001', topology.leader.member)
        self.assertEqual(1, self.status_reads())
        sleep_mock.assert_not_called()

    @patch('pgswitchover.StabilityMonitor.time.sleep')
    def test_stable_after_transient_polls(self, sleep_mock):
        self.cluster.node('pg2001').starting_reads = 2
        monitor = StabilityMonitor(self.reader, max_attempts=3, interval=10)
        topology = monitor.wait_for_stability()
        self.assertEqual('running', topology.get('pg2001').state)
        self.assertEqual(3, self.status_reads())
        self.assertEqual(2, sleep_mock.call_count)
        sleep_mock.assert_called_with(10)

    @patch('pgswitchover.StabilityMonitor.time.sleep')
    def test_timeout_after_exactly_max_attempts(self, sleep_mock):
        self.cluster.node('pg2001').starting_reads = 100
        monitor = StabilityMonitor(self.reader, max_attempts=4, interval=7)
        with self.assertRaises(StabilityTimeoutError) as context:
            monitor.wait_for_stability()
        self.assertEqual(4, self.status_reads())
        self.assertEqual(3, sleep_mock.call_count)
        self.assertIn('pg2001 (starting)', str(context.exception))

    @patch('pgswitchover.StabilityMonitor.time.sleep')
    def test_attempts_override(self, sleep_mock):
        self.cluster.node('pg2001').starting_reads = 100
        monitor = StabilityMonitor(self.reader, max_attempts=4, interval=7)
        with self.assertRaises(StabilityTimeoutError):
            monitor.wait_for_stability(max_attempts=1, interval=0)
        self.assertEqual(1, self.status_reads())
        sleep_mock.assert_not_called()

    @patch('pgswitchover.StabilityMonitor.time.sleep')
    def test_leaderless_polls_are_transient(self, sleep_mock):
        self.cluster.leaderless_reads = 1
        monitor = StabilityMonitor(self.reader, max_attempts=2, interval=0)
        topology, reason = monitor.poll()
        self.assertIsNotNone(reason)
        self.assertEqual([], topology.leaders)
        self.assertEqual('pg1001', monitor.wait_for_stability().leader.member)

    def test_unreachable_polls_are_transient(self):
        reader = MagicMock()
        reader.read.side_effect = ConnectivityError('Could not read the cluster status')
        monitor = StabilityMonitor(reader, max_attempts=2, interval=0)
        self.assertEqual((None, 'Could not read the cluster status'), monitor.poll())
        with self.assertRaises(StabilityTimeoutError):
            monitor.wait_for_stability()
        self.assertEqual(3, reader.read.call_count)
        reader.read.assert_called_with(require_leader=False)
