import cumin
from cumin import query, transport, transports

from pgswitchover.RemoteExecution.RemoteExecution import CommandReturn, RemoteExecution

DEFAULT_TIMEOUT = 120  # seconds, per command


class CuminExecution(RemoteExecution):
    """
    RemoteExecution implementation using Cumin
    """

    def __init__(self, config_file=None, timeout=DEFAULT_TIMEOUT):
        self._config = None
        self.config_file = config_file
        self.timeout = timeout

    @property
    def config(self):
        if not self._config:
            if self.config_file is None:
                self._config = cumin.Config()
            else:
                self._config = cumin.Config(self.config_file)

        return self._config

    def run(self, host, command):
        hosts = query.Query(self.config).execute(host)
        if not hosts:
            return CommandReturn(1, None, 'host is wrong or does not match rules')
        target = transports.Target(hosts)
        worker = transport.Transport.new(self.config, target)
        worker.commands = [transports.Command(self.format_command(command), timeout=self.timeout)]
        worker.handler = 'sync'
        return_code = worker.execute()
        for nodes, output in worker.get_results():
            if host in nodes:
                result = str(bytes(output), 'utf-8')
                return CommandReturn(return_code, result, None)

        return CommandReturn(return_code, None, None)
