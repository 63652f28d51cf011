#!/usr/bin/python3

"""
Moves the leadership of a Patroni-managed PostgreSQL cluster between two
datacenters, adjusting the nofailover/nosync tags of every node on the way.
Example usage:
  pg-switchover --mode simulation --cluster mydb --source-dc DC1 --target-dc DC2
"""

import argparse
import datetime
import getpass
import logging
import os
import sys

import arrow
import yaml

from pgswitchover.RemoteExecution.CuminExecution import (
    CuminExecution as RemoteExecution,
)
from pgswitchover.SwitchoverCoordinator import SwitchoverCoordinator
from pgswitchover.SwitchoverErrors import SwitchoverError
from pgswitchover.Topology import format_topology
from pgswitchover.TopologyProvider import PROVIDERS, get_topology_provider

DEFAULT_CONFIG_FILE = '/etc/pgswitchover/switchover.cnf'
DEFAULT_LOG_DIR = '/data/postgresql/logs'
MODES = ['switchover', 'simulation', 'show']
LOG_FORMAT = '[%(asctime)s]: %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
FILE_DATE_FORMAT = '%Y%m%d_%H%M%S'
ALLOWED_OPTIONS = ['patroni_config', 'patroni_user', 'patroni_service', 'stability_attempts',
                   'stability_interval', 'restart_grace', 'election_wait', 'max_lag', 'log_dir',
                   'topology', 'clusters', 'prefixes', 'seed_hosts', 'domain', 'metadata',
                   'cumin_config']
NUMERIC_OPTIONS = ['stability_attempts', 'stability_interval', 'restart_grace',
                   'election_wait', 'max_lag']


def parse_options(args=None):
    parser = argparse.ArgumentParser(description=('Performs a PostgreSQL switchover between '
                                                  'data centers using Patroni, automating the '
                                                  'tag changes needed on every node. Example '
                                                  'usage: pg-switchover --mode switchover '
                                                  '--cluster mydb --source-dc DC1 '
                                                  '--target-dc DC2'))
    parser.add_argument('--mode',
                        choices=MODES,
                        required=True,
                        help=('switchover: perform the switchover. simulation: run the '
                              'read-only pre-switchover checks, and ask to proceed if they '
                              'pass. show: print the cluster topology and exit.'))
    parser.add_argument('--cluster',
                        required=True,
                        help='Name of the cluster (database name, on the metadata database).')
    parser.add_argument('--source-dc',
                        dest='source_dc',
                        help='Datacenter the leadership is moved from (e.g. DC1).')
    parser.add_argument('--target-dc',
                        dest='target_dc',
                        help='Datacenter the leadership is moved to (e.g. DC2).')
    parser.add_argument('--config-file',
                        dest='config_file',
                        default=DEFAULT_CONFIG_FILE,
                        help='Config file to use. By default, {} .'.format(DEFAULT_CONFIG_FILE))
    parser.add_argument('--log-dir',
                        dest='log_dir',
                        default=None,
                        help=('Directory where the operation log is written. Default: the '
                              'log_dir of the config file, or {}.').format(DEFAULT_LOG_DIR))
    parser.add_argument('--force',
                        action='store_true',
                        help=('When set, do not ask for confirmation before the switchover. '
                              'On simulation mode, exit after the checks without asking to '
                              'proceed.'))
    options = parser.parse_args(args)
    if options.mode != 'show':
        if options.source_dc is None or options.target_dc is None:
            parser.error('--source-dc and --target-dc must be specified on {} mode'.format(
                options.mode))
        if options.source_dc == options.target_dc:
            parser.error('Source and Target DC cannot be the same')
    return options


def parse_config_file(config_file):
    """
    Reads the given yaml config file and returns it as a dictionary.
    == Example file ==
    patroni_config: '/etc/patroni/patroni.yml'
    stability_attempts: 6
    stability_interval: 10
    log_dir: '/data/postgresql/logs'
    topology: 'static'
    clusters:
      mydb:
        sites:
          DC1: ['ab01db01.example.org', 'ab01db02.example.org']
          DC2: ['ab02db01.example.org', 'ab02db02.example.org']
    """
    logger = logging.getLogger('switchover')
    try:
        with open(config_file) as f:
            config = yaml.load(f, yaml.SafeLoader)
    except yaml.YAMLError:
        logger.error('Error opening or parsing the YAML file %s', config_file)
        sys.exit(2)
    except FileNotFoundError:
        logger.error('File %s not found', config_file)
        sys.exit(2)
    if not isinstance(config, dict):
        logger.error('Error reading the configuration from file %s', config_file)
        sys.exit(2)
    for key in config.keys():
        if key not in ALLOWED_OPTIONS:
            logger.error('Found unknown config option "%s" on %s', str(key), config_file)
            sys.exit(2)
    for key in NUMERIC_OPTIONS:
        if key in config and (isinstance(config[key], bool)
                              or not isinstance(config[key], (int, float))
                              or config[key] < 0):
            logger.error('Config option "%s" must be a non-negative number', key)
            sys.exit(2)
    if config.get('stability_attempts', 1) < 1:
        logger.error('Config option "stability_attempts" must be at least 1')
        sys.exit(2)
    if config.get('topology', 'static') not in PROVIDERS:
        logger.error('Unknown topology "%s", valid ones are: %s', config.get('topology'),
                     ', '.join(PROVIDERS))
        sys.exit(2)
    return config


def add_log_file(log_dir, mode):
    """
    Creates (if needed) the private log directory, and a new log file for this
    run on it, and sends the switchover log there too. Returns its path.
    """
    os.makedirs(log_dir, mode=0o700, exist_ok=True)
    os.chmod(log_dir, 0o700)
    formatted_date = datetime.datetime.now().strftime(FILE_DATE_FORMAT)
    log_file = os.path.join(log_dir, 'postgresql_{}_{}.log'.format(mode, formatted_date))
    handler = logging.FileHandler(log_file)
    os.chmod(log_file, 0o600)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logging.getLogger('switchover').addHandler(handler)
    return log_file


def ask_for_confirmation(question):
    """
    Prompt console for a yes/no answer, return True if the answer was yes
    """
    answer = ''
    while answer not in ['yes', 'no']:
        answer = input('{} [yes/no]? '.format(question)).lower()
        if answer not in ['yes', 'no']:
            print('Please type "yes" or "no"')
    return answer == 'yes'


def print_header(options, log_file, topology_config):
    logger = logging.getLogger('switchover')
    logger.info('=================================================')
    logger.info('PostgreSQL Switchover Tool')
    logger.info('Running Mode: %s', options.mode.upper())
    logger.info('Current Date and Time (UTC): %s', arrow.utcnow().format('YYYY-MM-DD HH:mm:ss'))
    logger.info("Current User's Login: %s", getpass.getuser())
    logger.info('Cluster: %s', topology_config.cluster_id)
    logger.info('Source DC: %s', options.source_dc)
    logger.info('Target DC: %s', options.target_dc)
    logger.info('Log File: %s', log_file)
    logger.info('=================================================')


def main(args=None):
    logging.basicConfig(stream=sys.stdout, level=logging.INFO,
                        format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    logger = logging.getLogger('switchover')

    options = parse_options(args)
    config = parse_config_file(options.config_file)

    log_dir = options.log_dir or config.get('log_dir', DEFAULT_LOG_DIR)
    try:
        log_file = add_log_file(log_dir, options.mode)
    except OSError as ex:
        logger.error('Cannot create the log file on %s: %s', log_dir, ex)
        sys.exit(2)

    remote_execution = RemoteExecution(config.get('cumin_config'))
    provider = get_topology_provider(config, remote_execution)
    try:
        if options.mode == 'show':
            topology = provider.resolve(options.cluster)
            for line in format_topology(topology):
                logger.info(line)
            sys.exit(0)
        topology_config = provider.load(options.cluster)
    except SwitchoverError as ex:
        logger.error('%s: %s', ex.kind, ex)
        sys.exit(1)

    print_header(options, log_file, topology_config)
    coordinator = SwitchoverCoordinator(topology_config, remote_execution, config)

    if options.mode == 'simulation':
        logger.info('Starting simulation mode...')
        report = coordinator.simulate(options.source_dc, options.target_dc)
        if not report.passed:
            sys.exit(1)
        if options.force or not ask_for_confirmation(
                'Pre-checks completed successfully. Proceed with actual switchover'):
            logger.info('Simulation completed. Exiting.')
            sys.exit(0)
        logger.info('Proceeding with switchover...')
    elif not options.force and not ask_for_confirmation(
            'Are you sure you want to move the leadership of {} from {} to {}'.format(
                options.cluster, options.source_dc, options.target_dc)):
        logger.info('Aborting switchover without touching anything!')
        sys.exit(0)

    logger.info('Starting switchover mode...')
    result = coordinator.run(options.source_dc, options.target_dc)
    logger.info('=================================================')
    for line in result.summary():
        if result.ok:
            logger.info(line)
        else:
            logger.error(line)
    logger.info('Performed By: %s', getpass.getuser())
    logger.info('Operation completed. Check the log file for details: %s', log_file)
    logger.info('=================================================')
    sys.exit(0 if result.ok else 1)


if __name__ == "__main__":
    main()
