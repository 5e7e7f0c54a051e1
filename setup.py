#!/usr/bin/env python3
"""
Setup script for chunksync

Installation:
    pip install .
    pip install -e .  # Development mode

Distribution:
    python setup.py sdist bdist_wheel
    twine upload dist/*
"""

from setuptools import setup
import os
import re

# Read version from chunksync.py
with open('chunksync.py', 'r', encoding='utf-8') as f:
    content = f.read()
    version_match = re.search(r'^__version__\s*=\s*[\'"]([^\'"]*)[\'"]', content, re.MULTILINE)
    if version_match:
        version = version_match.group(1)
    else:
        raise RuntimeError("Unable to find version string in chunksync.py")

# Read long description from README, if present
long_description = ''
if os.path.exists('README.md'):
    with open('README.md', 'r', encoding='utf-8') as f:
        long_description = f.read()

setup(
    name='chunksync',
    version=version,
    description='Digest-addressed delta transfer of a single file over any byte stream. '
                'Scan-ahead chunk matching, atomic replacement, pure Python.',
    long_description=long_description,
    long_description_content_type='text/markdown',
    py_modules=['chunksync'],
    python_requires='>=3.8',
    install_requires=[
        'xxhash>=3.0.0',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0.0',
            'pytest-cov>=4.0.0',
            'mypy>=1.0.0',
            'black>=23.0.0',
            'flake8>=6.0.0',
            'isort>=5.12.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'chunksync=chunksync:main',
        ],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: System :: Archiving :: Mirroring',
        'Topic :: System :: Networking',
        'Topic :: Utilities',
    ],
    keywords='sync delta transfer chunk digest file-transfer protocol',
    license='GPL-3.0-or-later',
    platforms=['any'],
    zip_safe=False,
)
