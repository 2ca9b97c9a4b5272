from setuptools import find_packages, setup

setup(
    name="dp-builder",
    version="0.1.0",
    packages=find_packages(
        include=[
            "dp_common",
            "dp_common.*",
            "dp_persistence",
            "dp_persistence.*",
            "dp_builder",
            "dp_builder.*",
            "dp_controller",
            "dp_controller.*",
            "dp_admin",
            "dp_admin.*",
        ]
    ),
    install_requires=[
        "aiosqlite>=0.19.0",
        "click>=8.1.0",
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
            "dp-controller=dp_controller.__main__:main",
            "dp-admin=dp_admin.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
