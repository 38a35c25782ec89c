"""
setup.py for JobCore
"""

from setuptools import setup, find_packages

setup(
    name="jobcore",
    version="0.1.0",
    description="Durable polling job queue with rate limiting, pipelines and credit compensation",
    packages=find_packages(include=['jobcore', 'jobcore.*']),
    package_data={
        'jobcore': ['config/default_config.yaml'],
    },
    include_package_data=True,
    python_requires='>=3.9',
    install_requires=[
        'pyyaml',
        'sqlalchemy>=2.0',
        'click>=8.0',
        'pydantic>=2.0'
    ],
    extras_require={
        'postgres': ['psycopg2-binary'],
        'test': [
            'pytest>=7.0',
            'pytest-asyncio>=0.21'
        ]
    },
    entry_points={
        'console_scripts': [
            'jobcore=jobcore.cli:cli',
        ],
    }
)
