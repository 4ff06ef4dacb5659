#!/usr/bin/env python3
"""Browse - drive a local Chrome over CDP with natural-language instructions.

Usage:
    $ python browse.py navigate https://example.com
    $ python browse.py act "click the login button"
    $ python browse.py extract "get the price" '{"price": "number"}'
    $ python browse.py observe "buttons in the header"
    $ python browse.py screenshot
    $ python browse.py close
"""

from agent_browse.cli import main

if __name__ == "__main__":
    main()
