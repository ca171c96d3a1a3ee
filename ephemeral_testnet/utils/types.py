import pathlib as pl

FileType = str | pl.Path
# Command line of an external tool, either a string or a list of arguments
CommandType = str | list[str]
