"""Entry point for fastdz."""

from fastdz.preprocess.__main__ import main

if __name__ == "__main__":
    main()
