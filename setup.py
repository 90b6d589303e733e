# This should be only one line. If it must be multi-line, indent the second
# line onwards to keep the PKG-INFO file format intact.
"""Reconcile secrets declared in a source tree with a remote secret store.
"""

from setuptools import find_packages, setup

version = open("src/secretsync/version.txt").read().strip()

setup(
    name="secretsync",
    version=version,
    install_requires=[
        "ConfigUpdater",
        "requests",
        # ConfigUpdater does not manage its minimum requirements correctly.
        "setuptools>=38.3",
        "importlib_metadata",
        "importlib_resources",
        "py",
        "pyyaml",
        "pyrage",
        "cryptography", ],
    extras_require={
        "test": [
            "mock",
            "pytest",
            "pytest-coverage",
            "pytest-instafail",
            "pytest-timeout", ]},
    entry_points="""
        [console_scripts]
            secretsync = secretsync.main:main
        [secretsync.stores]
            memory = secretsync.store.memory:MemoryStore
            vault = secretsync.store.vault:VaultKVStore
    """,
    license="BSD (2-clause)",
    keywords="secrets vault sops age gpg",
    classifiers="""\
License :: OSI Approved :: BSD License
Programming Language :: Python
Programming Language :: Python :: 3
Programming Language :: Python :: 3 :: Only
"""[:-1].split("\n"),
    description=__doc__.strip(),
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    packages=find_packages("src"),
    package_dir={"": "src"},
    include_package_data=True,
    zip_safe=False,
    test_suite="secretsync.tests",
    python_requires=">=3.7")
