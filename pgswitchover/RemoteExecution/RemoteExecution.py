from collections import namedtuple

CommandReturn = namedtuple('CommandReturn', ['returncode', 'stdout', 'stderr'])


class RemoteExecution:
    """
    Interface of the channel used to run commands on the database hosts.
    Implementations return a CommandReturn, and never raise on a failed command:
    a non-zero returncode is how failure (including an unreachable host) is reported.
    """

    def run(self, host, command):
        """
        Executes command on host and waits for it to finish.

        :param host: hostname of the target node
        :param command: string, or list of arguments joined by spaces
        :return: CommandReturn(returncode, stdout, stderr)
        """
        raise NotImplementedError

    def format_command(self, command):
        if isinstance(command, str):
            return command
        else:
            return ' '.join(command)
