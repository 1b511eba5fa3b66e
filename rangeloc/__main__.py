"""Entry point: python -m rangeloc"""

from rangeloc.main import main

if __name__ == "__main__":
    main()
