### stdlib imports
import typing

### vendor imports
import sh

# tar is only needed for actually writing archives, so a missing binary is
# reported when an archive is requested rather than at import time
tar: typing.Optional[sh.Command] = None
try:
    tar = sh.Command("tar")
except sh.CommandNotFound:
    pass
