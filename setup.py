# -*- coding: utf-8 -*-
"""secret-sidecar a process that keeps one secret published to a file.

It logs in to a secret store with a workload identity, writes the secret to a
file via temp file and atomic rename, and renews or refetches it ahead of its
lease expiry with backoff on failure.

"""

import setuptools
import re
from io import open

VERSIONFILE="secret_sidecar/_version.py"
verstrline = open(VERSIONFILE, "rt").read()
VSRE = r"^__version__ = ['\"]([^'\"]*)['\"]"
mo = re.search(VSRE, verstrline, re.M)
if mo:
    verstr = mo.group(1)
else:
    raise RuntimeError("Unable to find version string in %s." % (VERSIONFILE,))

with open("README.md", "r", encoding='utf-8') as fh:
    long_description = fh.read()

setuptools.setup(
    name='secret_sidecar',
    version=verstr,
    author="Mike Moore",
    author_email="z_z_zebra@yahoo.com",
    description="A sidecar that publishes a secret store credential to a file atomically and keeps it renewed before its lease expires",
    long_description_content_type="text/markdown",
    long_description=long_description,
    url="https://github.com/Mikemoore63/secret-sidecar",
    packages=setuptools.find_packages(),
    include_package_data=True,
    license="MIT",
    scripts=[],
    python_requires=">=3.8",
    install_requires=[
        "requests>=2.20,<3.0",
        "google-auth>=2.0,<3.0",
        "google-cloud-secret-manager~=2.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "secret-sidecar=secret_sidecar.cli:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX",
    ],

)
