from setuptools import setup, find_packages


def scm_version():
    def local_scheme(version):
        return version.format_choice("+{node}", "+{node}.dirty")
    return {
        "relative_to": __file__,
        "version_scheme": "guess-next-dev",
        "local_scheme": local_scheme,
        "fallback_version": "0.1.0",
    }


setup(
    name="approxacc",
    use_scm_version=scm_version(),
    description="Exact and approximate pipelined accumulator generators for Amaranth HDL",
    license="0-clause BSD License",
    python_requires="~=3.9",
    setup_requires=[
        "setuptools",
        "setuptools_scm"
    ],
    install_requires=[
        "amaranth>=0.5,<0.6",
        "pyvcd",
    ],
    extras_require={
        "toolchain": [
            "amaranth[builtin-yosys]",
        ],
    },
    packages=find_packages(exclude=["tests", "tests.*"]),
    entry_points={
        "console_scripts": [
            "approxacc = approxacc.cli:run_main"
        ],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'License :: OSI Approved', # ' :: 0-clause BSD License', (not in PyPI)
        'Topic :: Scientific/Engineering :: Electronic Design Automation (EDA)',
        'Topic :: System :: Hardware',
    ],
)
