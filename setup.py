from setuptools import setup, find_packages

setup(
    name='PopWeight',
    version='0.1.0',
    description='Iterative Proportional Updating (IPU) weights for survey expansion',
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.8',
    install_requires=[
        'numpy',
        'pandas',
        'scipy',
        'pyyaml',

    ],
    extras_require={
        'test': ['pytest'],
    },
)
