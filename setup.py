# ╔══════════════════════════════════════════════════════════════════════╗
# ║  DiffuseKit — Diffusion Scheduling Engine                            ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""
DiffuseKit build configuration.

The repository root is the ``diffusekit`` package; sub-packages sit
beside it and are mapped explicitly through ``package_dir``.

Build
-----
    pip install -e .                          # editable install
    pip install -e .[test]                    # with the test toolchain
    python -m build                           # sdist + wheel
"""
import os

from setuptools import setup

# ── Package metadata ──
_README = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'README.md')
if os.path.isfile(_README):
    with open(_README, 'r', encoding='utf-8') as fh:
        long_description = fh.read()
else:
    long_description = ''

TEST_REQUIRES = [
    'pytest>=7.0',
]

setup(
    name='diffusekit',
    version='0.1.0',
    author='Pictofeed, LLC',
    author_email='engineering@pictofeed.io',
    description=(
        'Diffusion scheduling and orchestration engine — '
        'noise schedulers, diffuser loops and batch sweeps on NumPy'
    ),
    long_description=long_description,
    long_description_content_type='text/markdown',
    url='https://github.com/pictofeed/diffusekit',
    license='Proprietary',

    package_dir={
        'diffusekit': '.',
        'diffusekit.diffusion': 'diffusion',
        'diffusekit.utils': 'utils',
    },
    packages=[
        'diffusekit',
        'diffusekit.diffusion',
        'diffusekit.utils',
    ],

    python_requires='>=3.10',
    install_requires=[
        'numpy>=1.24',
        'scipy>=1.10',
        'PyYAML>=6.0',
    ],
    extras_require={
        'test': TEST_REQUIRES,
        'dev': TEST_REQUIRES,
    },

    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Intended Audience :: Science/Research',
        'License :: Other/Proprietary License',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Scientific/Engineering :: Artificial Intelligence',
    ],
    zip_safe=False,
)
