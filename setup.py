from setuptools import setup

description = 'Remote procedure calls, durable calls, and events over NATS'

setup(
    name='natsrpc',
    version='0.1.0',
    description=description,
    long_description=description,
    author='natsrpc developers',
    python_requires='>=3.10',
    packages=['natsrpc', 'natsrpc.tools'],
    install_requires=[
        'click>=8,<9',
        'nats-py>=2.6,<3',
        'orjson>=3,<4',
        'structlog>=25.5',
        'uvloop>=0.18,<1',
        'PyYAML>=6,<7',
    ],
    extras_require={
        'test': [
            'pytest>=7',
            'pytest-asyncio>=0.21',
            'pytest-mock>=3',
        ],
    },
    entry_points={
        'console_scripts': ['natsrpc=natsrpc.cli:cli'],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Natural Language :: English',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python :: 3.10',
    ],
    package_data={
        'natsrpc': ['py.typed'],
    },
)
