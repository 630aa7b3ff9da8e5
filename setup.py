"""Python setup.py for hercules-device package"""
import io
import os
from setuptools import find_packages, setup


def read(*paths, **kwargs):
    """Read the contents of a text file safely.
    >>> read("hercules_device", "VERSION")
    '0.1.0'
    >>> read("README.md")
    ...
    """

    content = ""
    with io.open(
        os.path.join(os.path.dirname(__file__), *paths),
        encoding=kwargs.get("encoding", "utf8"),
    ) as open_file:
        content = open_file.read().strip()
    return content


def read_requirements(path):
    return [
        line.strip()
        for line in read(path).split("\n")
        if line.strip() and not line.startswith(('"', "#", "-", "git+"))
    ]


setup(
    name="hercules-device",
    version=read("hercules_device", "VERSION"),
    description="Session daemon for ref-based mobile UI automation over accessibility snapshots",
    url="https://github.com/test-zeus-ai/hercules/",
    long_description=read("README.md"),
    long_description_content_type="text/markdown",
    author="test-zeus-ai",
    packages=find_packages(exclude=["tests", "tests.*", ".github"]),
    package_data={"hercules_device": ["VERSION"]},
    python_requires=">=3.10",
    install_requires=read_requirements("requirements.txt"),
    entry_points={
        "console_scripts": [
            "hercules-device-daemon = hercules_device.__main__:main",
            "hercules-device = hercules_device.daemon.client:main",
        ]
    },
    extras_require={"test": read_requirements("requirements-test.txt")},
)
