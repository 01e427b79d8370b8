from .mother_entry import MotherEntry
from .allocation_projection import AllocationProjection
from .truck_allocation import TruckAllocationRecord, make_truck_key
from .allocation_report import AllocationReport
from .permit_pre_allocation import PermitPreAllocation
from .work_detail import WorkDetail
from .payments import Payment, TruckPayment, OwnerBalance, BalanceUsage
