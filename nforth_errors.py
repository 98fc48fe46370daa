#!/usr/bin/env python3
# nforth_errors.py
#
# Erreurs typées du noyau nforth.
# Toute erreur interrompt l'évaluation de la ligne entière ; les piles
# et le dictionnaire restent dans l'état où l'erreur les a laissés.

from __future__ import annotations


class ForthError(RuntimeError): ...

class StackUnderflowError(ForthError): ...
class UnknownWordError(ForthError): ...
class UnmatchedControlError(ForthError): ...
class TypeMismatchError(ForthError): ...
class DivideByZeroError(ForthError): ...
class UnexpectedEndError(ForthError): ...
class OutOfRangeError(ForthError): ...
class RecursionDepthError(ForthError): ...
