from dataclasses import dataclass
import re


@dataclass
class Version:
    major: int
    minor: int
    patch: int = 0

    def __lt__(self, other):
        return [self.major, self.minor, self.patch] < [other.major, other.minor, other.patch]

    def __gt__(self, other):
        return other < self

    def __le__(self, other):
        return [self.major, self.minor, self.patch] <= [other.major, other.minor, other.patch]

    def __ge__(self, other):
        return other <= self

    def __str__(self):
        return "{}.{}.{}".format(self.major, self.minor, self.patch)

    @classmethod
    def from_str(cls, s: str) -> "Version":
        """Parse `0.1.5`, `v0.1.5` or `lspsd 0.1.5` (the `--version` output)"""
        m = re.search(r'v?(\d+)\.(\d+)(?:\.(\d+))?', s)
        if m is None:
            raise ValueError("Not a lspsd version: {!r}".format(s))
        parts = [int(m.group(i)) for i in range(1, 4) if m.group(i) is not None]
        major, minor = parts[0], parts[1]
        if len(parts) == 3:
            patch = parts[2]
        else:
            patch = 0

        return Version(major=major, minor=minor, patch=patch)
