__version__ = '1.0.0'

from idclaim.client import GetIdFailure as GetIdFailure
from idclaim.client import IdentifierClaimer as IdentifierClaimer
from idclaim.client import LeaseFailure as LeaseFailure
from idclaim.client import LeaseManager as LeaseManager
from idclaim.client import Member as Member
from idclaim.client import MembershipReader as MembershipReader
from idclaim.client import PutSucceededFailure as PutSucceededFailure
from idclaim.client import Registration as Registration
from idclaim.client import TxnError as TxnError
from idclaim.client import VerificationError as VerificationError
from idclaim.config import ClaimConfig as ClaimConfig
from idclaim.store import MemoryStore as MemoryStore
from idclaim.store import SqlStore as SqlStore
from idclaim.store import StoreError as StoreError
