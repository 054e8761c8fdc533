#!/usr/bin/env python3
# encoding: utf-8
#
# FolderDAV
# Copyright (C) 2016-2017 Jelmer Vernooij <jelmer@jelmer.uk>, et al.
#
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU General Public License
# as published by the Free Software Foundation; version 3
# of the License or (at your option) any later version of
# the License.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 51 Franklin Street, Fifth Floor, Boston,
# MA  02110-1301, USA.

from setuptools import find_packages, setup
import sys

version = "0.1.0"

with open('README.rst', encoding='utf-8') as f:
    long_description = f.read()

if sys.platform == 'win32':
    # Strip out non-mbcs characters
    long_description = long_description.encode('ascii', 'replace').decode()

setup(name="folderdav",
      description="CalDAV/CardDAV front-end for mailbox-style folder stores",
      long_description=long_description,
      version=version,
      license="GNU GPLv3 or later",
      install_requires=[
          'aiohttp',
          'icalendar>=6.1.0',
          'defusedxml',
          'jinja2',
          'multidict',
          'python-dateutil',
          'vobject',
      ],
      entry_points={
          'console_scripts': [
              'folderdav = folderdav.web:main'
          ],
      },
      packages=find_packages(exclude=['tests', 'tests.*']),
      package_data={'folderdav': ['templates/*.txt']},
      test_suite='tests.test_suite',
      classifiers=[
          'Development Status :: 3 - Alpha',
          'License :: OSI Approved :: '
          'GNU General Public License v3 or later (GPLv3+)',
          'Programming Language :: Python :: 3.9',
          'Programming Language :: Python :: 3.10',
          'Programming Language :: Python :: Implementation :: CPython',
          'Operating System :: POSIX',
      ],
      python_requires='>=3.9',
      )
