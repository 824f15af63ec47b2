from setuptools import setup, find_packages

setup(
    name="airdrop-launcher",
    version="0.1.0",
    description="Resilient deployment, verification and funding of airdrop contracts on EVM chains",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="Airdrop Launcher Contributors",
    packages=find_packages(where=".", exclude=["tests", "tests.*"]),
    install_requires=[
        "rich>=10.0.0",
        "python-dotenv>=0.19.0",
        "requests>=2.26.0",
        "pandas>=1.3.0",
        "web3>=7.0.0",
        "eth-account>=0.13.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    entry_points={
        "console_scripts": [
            "airdrop-launcher=airdrop_launcher.cli:main",
        ],
    },
)
