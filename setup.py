import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name="drivescan",
    version="0.1.0",
    author="Jesse B. Crawford",
    author_email="jesse@jbcrawford.us",
    description="Drive-test collection of cellular measurements and network probes",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=['tests']),
    python_requires='>=3.7',
    install_requires=[
        'gpiozero',
        'pyserial',
        'pynmea2',
        'peewee',
        'requests',
        'PyYAML',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points = {
        'console_scripts': ['drivescan=drivescan.start:__main__'],
    }
)
