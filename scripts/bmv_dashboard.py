#!/usr/bin/env python3
# BMV Monitor - Terminal Dashboard
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Runs the monitor with the terminal panel from a source checkout, without
# installing the package.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""
BMV CLI Dashboard

Usage:
    scripts/bmv_dashboard.py --device /dev/ttyUSB0
    scripts/bmv_dashboard.py --subscribe 192.168.1.10:7070

Options are those of `bmv-monitor --help`.
"""
import sys

# Include the library path so we can import bmv_monitor if this script is run from the project root
sys.path.append(".")

from bmv_monitor.cli import main

if __name__ == "__main__":
    sys.exit(main())
