from setuptools import find_packages, setup

setup(
    name="pipeline-engine",
    version="0.1.0",
    packages=find_packages(
        include=[
            "pipeline_common",
            "pipeline_common.*",
            "pipeline_engine",
            "pipeline_engine.*",
            "pipeline_persistence",
            "pipeline_persistence.*",
            "pipeline_admin",
            "pipeline_admin.*",
        ]
    ),
    install_requires=[
        "aiosqlite>=0.19.0",
        "click>=8.1.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "pipeline-run=pipeline_engine.__main__:main",
            "pipeline-admin=pipeline_admin.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
