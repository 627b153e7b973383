from setuptools import setup, find_packages

setup(
    name="mini-staking",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    install_requires=[
        "web3>=7.0.0",
        "eth-account>=0.13.0",
        "aiohttp>=3.8.0",
        "loguru>=0.7.0",
        "pydantic>=2.0.0",
        "Click>=8.0"
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0"
        ]
    },
    entry_points={
        "console_scripts": [
            "mini-staking=mini_staking.main:cli",
        ],
    },
    python_requires=">=3.9",
    author="MINI Staking Team",
    description="Command line client for staking MINI tokens with lock-period rewards",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Office/Business :: Financial",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
    ],
)
