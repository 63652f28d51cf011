"""Tests for CuminExecution class."""
import unittest
from unittest.mock import patch, MagicMock

from pgswitchover.RemoteExecution.CuminExecution import CuminExecution
from pgswitchover.RemoteExecution.RemoteExecution import RemoteExecution


class TestCuminExecution(unittest.TestCase):
    """Test cases for CuminExecution."""

    def setUp(self):
        self.executor = CuminExecution()

    @patch('pgswitchover.RemoteExecution.CuminExecution.cumin.Config')
    def test_config(self, config_mock):
        config_mock.return_value = MagicMock()

        conf1 = self.executor.config
        conf2 = self.executor.config

        self.assertEqual(config_mock.return_value, conf1)
        self.assertEqual(config_mock.return_value, conf2)
        self.assertEqual(1, config_mock.call_count)
        config_mock.assert_called_once_with()

    @patch('pgswitchover.RemoteExecution.CuminExecution.cumin.Config')
    def test_config_file(self, config_mock):
        executor = CuminExecution('/etc/cumin/config.yaml')
        executor.config
        config_mock.assert_called_once_with('/etc/cumin/config.yaml')

    def test_format_command_str(self):
        orig_cmd = "some command"
        formatted_command = self.executor.format_command(orig_cmd)

        self.assertEqual(orig_cmd, formatted_command)

    def test_format_command_list(self):
        orig_cmd = ["some", "command"]
        formatted_command = self.executor.format_command(orig_cmd)

        self.assertEqual(' '.join(orig_cmd), formatted_command)

    def test_run_not_implemented(self):
        with self.assertRaises(NotImplementedError):
            RemoteExecution().run('pg1001.dc1.example.org', '/bin/true')

    @patch('pgswitchover.RemoteExecution.CuminExecution.cumin.Config')
    @patch('pgswitchover.RemoteExecution.CuminExecution.query.Query')
    def test_run_no_hosts(self, query_mock, config_mock):
        query_mock.return_value.execute.return_value = []
        command_return = self.executor.run('wrong_host.example.org', 'some command')

        self.assertEqual(command_return.returncode, 1)
        self.assertEqual(command_return.stdout, None)
        self.assertEqual(command_return.stderr, 'host is wrong or does not match rules')

    @patch('pgswitchover.RemoteExecution.CuminExecution.cumin.Config')
    @patch('pgswitchover.RemoteExecution.CuminExecution.transports')
    @patch('pgswitchover.RemoteExecution.CuminExecution.transport.Transport.new')
    @patch('pgswitchover.RemoteExecution.CuminExecution.query.Query')
    def test_run(self, query_mock, new_mock, transports_mock, config_mock):
        host = 'pg1001.dc1.example.org'
        query_mock.return_value.execute.return_value = [host]
        worker = new_mock.return_value
        worker.execute.return_value = 0
        worker.get_results.return_value = [([host], b'[{"Member": "pg1001"}]')]

        command_return = self.executor.run(host, ['sudo', 'cat', '/etc/patroni/patroni.yml'])

        self.assertEqual(0, command_return.returncode)
        self.assertEqual('[{"Member": "pg1001"}]', command_return.stdout)
        transports_mock.Command.assert_called_once_with('sudo cat /etc/patroni/patroni.yml',
                                                        timeout=120)
        self.assertEqual('sync', worker.handler)

    @patch('pgswitchover.RemoteExecution.CuminExecution.cumin.Config')
    @patch('pgswitchover.RemoteExecution.CuminExecution.transports')
    @patch('pgswitchover.RemoteExecution.CuminExecution.transport.Transport.new')
    @patch('pgswitchover.RemoteExecution.CuminExecution.query.Query')
    def test_run_no_output(self, query_mock, new_mock, transports_mock, config_mock):
        host = 'pg1001.dc1.example.org'
        query_mock.return_value.execute.return_value = [host]
        new_mock.return_value.execute.return_value = 2
        new_mock.return_value.get_results.return_value = []

        command_return = self.executor.run(host, '/bin/true')

        self.assertEqual((2, None, None), tuple(command_return))
