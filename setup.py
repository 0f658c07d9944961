from setuptools import find_packages
from setuptools import setup


with open("README.md", "r") as f:
    long_description = f.read()

with open("test_deps.txt") as f:
    testing_deps = [line.strip() for line in f.readlines() if line.strip()]

setup(
    name="zipkinproxy",
    version="0.1.0",
    description="Zipkin compatible span collector that forwards spans to Honeycomb",
    classifiers=[
        "Programming Language :: Python",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="Apache 2.0",
    packages=find_packages(exclude=["tests*"]),
    package_data={"zipkinproxy": ["py.typed", "zipkinCore.thrift"]},
    python_requires=">=3.8",
    install_requires=[
        "aiohttp",
        "requests",
        "thriftpy2",
        "typing_extensions",
        "yarl",
    ],
    tests_require=testing_deps,
    entry_points={
        "console_scripts": [
            "zipkinproxy=zipkinproxy.proxy:main",
        ]
    },
    extras_require={
        "testing": testing_deps,
    },
    # Required for mypy compatibility, see
    # https://mypy.readthedocs.io/en/stable/installed_packages.html#making-pep-561-compatible-packages
    zip_safe=False,
)
