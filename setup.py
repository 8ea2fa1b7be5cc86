from setuptools import setup, find_packages

setup(
    name="gcp-graph-collector",
    version="0.1.0",
    description="Collects Google Cloud resources into a graph of typed entities and relationships",
    author="Graph Collector",
    python_requires=">=3.9",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["graph_collector"],
    install_requires=[
        "google-api-core>=2.15.0",
        "google-auth>=2.23.0",
        "google-cloud-appengine-admin>=1.10.0",
        "google-cloud-asset>=3.24.0",
        "google-cloud-functions>=1.13.0",
        "google-cloud-iam>=2.12.0",
        "google-cloud-resource-manager>=1.11.0",
        "google-cloud-storage>=2.14.0",
        "pyyaml>=6.0",
        "requests>=2.31.0",
    ],
    extras_require={
        "dev": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "graph-collector=graph_collector:main",
        ],
    },
)
