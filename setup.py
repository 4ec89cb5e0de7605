"""
Setup script for TorChat-Paste core - identity, storage and session layer
of a peer-to-peer messenger over Tor.

This package provides:
- X25519 identity keys with short, human-verifiable fingerprints
- Password-protected identity and contact storage (Argon2id + XSalsa20-Poly1305)
- Authenticated session handshake with forward-secret ephemeral keys
- Framed, padded and fragmented message protocol over any byte stream
- Command line administration of identity and contacts
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='torchat-paste-core',
    version='0.3.0',
    description='Security core for a peer-to-peer messenger over Tor: identity, encrypted storage and sessions',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.8',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'PyNaCl>=1.5.0',
        'rich>=13.7.0',
        'aiofiles>=23.2.1',
        'tomli>=2.0.1; python_version < "3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'torchat=torchat.main:main',
        ],
    },
)
