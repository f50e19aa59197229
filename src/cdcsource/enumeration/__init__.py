from cdcsource.enumeration.enumerator import SplitEnumerator

__all__ = ["SplitEnumerator"]
