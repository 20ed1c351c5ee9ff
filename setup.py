from setuptools import find_packages, setup

setup(
    name="lxc-console",
    version="0.1.0",
    packages=find_packages(
        include=[
            "lxc_common",
            "lxc_common.*",
            "lxc_client",
            "lxc_client.*",
            "lxc_engine",
            "lxc_engine.*",
            "lxc_server",
            "lxc_server.*",
            "lxc_cli",
            "lxc_cli.*",
        ]
    ),
    install_requires=[
        "requests>=2.32.0",
        "urllib3>=2.0.0",
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
        "pydantic>=2.0.0",
        "click>=8.1.0",
        "tenacity>=8.2.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "lxc-console=lxc_cli.cli:main",
            "lxc-console-server=lxc_server.__main__:main",
        ],
    },
    python_requires=">=3.11",
)
