'''pgswitchover.'''
from setuptools import setup

with open('README.md', 'r') as fh:
    long_description = fh.read()

setup(
    name='pgswitchover',
    description='pgswitchover',
    version='0.1',
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=['pgswitchover',
              'pgswitchover.cli',
              'pgswitchover.RemoteExecution',
              'pgswitchover.test',
              'pgswitchover.test.unit'],
    install_requires=['arrow',
                      'cumin',
                      'pymysql>=0.9.3',
                      'PyYAML'],
    extras_require={
        'tests': ['freezegun',
                  'pytest'],
    },
    entry_points={
        'console_scripts': [
           # cli
           'pg-switchover = pgswitchover.cli.switchover_postgresql:main',
        ]
    },
    test_suite='pgswitchover.test',
)
