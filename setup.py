#!/usr/bin/env python

from os import path

from setuptools import find_packages, setup

here = path.abspath(path.dirname(__file__))


def strip_envmark(requires):
    # Strip out environment markers options and comments
    return [
        req.split(";")[0].rstrip()
        for req in requires
        if req.strip() and not req.startswith("#")
    ]


# Get the long description from the README file
with open(path.join(here, "README.rst"), encoding="utf-8") as f:
    long_description = f.read()

with open(path.join(here, "requirements.txt")) as f:
    requirements = strip_envmark(f.readlines())

with open(path.join(here, "test-requirements.txt")) as f:
    test_requirements = strip_envmark(f.readlines())

setup(
    name="nfsquota",
    version="0.1.0",
    description="Per-volume filesystem quotas for NFS-backed Kubernetes volumes.",
    long_description=long_description,
    long_description_content_type="text/x-rst",
    license="Apache-2.0",
    packages=find_packages(exclude=["docs", "tests", "tests.*"]),
    entry_points={
        "console_scripts": [
            "nfsquotad = nfsquota.daemon.entry:entry",
        ]
    },
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={"test": test_requirements},
)
