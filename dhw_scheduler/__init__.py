# SPDX-License-Identifier: MPL-2.0
"""Price-driven scheduling of domestic hot water heating."""
