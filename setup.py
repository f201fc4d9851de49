"""
Setup configuration for cron-task-manager package.
"""

from setuptools import setup
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text() if (this_directory / "README.md").exists() else ""

setup(
    name="cron-task-manager",
    version="0.1.0",
    description="Run shell commands on cron schedules with activity logs, webhooks and email notifications",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # Package discovery
    packages=["cronmanager"],

    # Dependencies
    install_requires=[
        "apscheduler>=3.10.0,<4.0",
        "croniter>=1.4.0",
        "requests>=2.31.0",
        "python-dotenv>=1.0.0",
    ],

    # Optional dependencies
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
    },

    # Python version requirement (zoneinfo)
    python_requires=">=3.9",

    # CLI entry points
    entry_points={
        "console_scripts": [
            "cron-manager=cronmanager.cli:main",
        ],
    },

    # Classification
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Systems Administration",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],

    # Keywords
    keywords="cron scheduler shell tasks webhook notifications",

    include_package_data=True,
)
