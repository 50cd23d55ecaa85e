from setuptools import setup, find_namespace_packages
import os

# Get e3 version from the VERSION file.
version_file = os.path.join(os.path.dirname(__file__), "VERSION")
with open(version_file) as f:
    e3_version = f.read().strip()


extras_require = {
    "test": ["pytest", "mock", "moto[ec2]"],
}

setup(
    name="e3-secgroup",
    version=e3_version,
    description="E3 EC2 Security Group Extension",
    author="AdaCore's Production Team",
    packages=find_namespace_packages(where="src", include=["e3.*"]),
    package_dir={"": "src"},
    package_data={"e3.secgroup": ["py.typed"]},
    install_requires=(
        "botocore",
        "pyyaml",
        "troposphere",
        "e3-core",
    ),
    extras_require=extras_require,
    entry_points={
        "console_scripts": [
            "e3-secgroup = e3.secgroup.main:main",
        ],
    },
)
