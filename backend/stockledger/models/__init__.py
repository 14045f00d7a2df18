from .master import Branch, Department, Unit, ProductGroup, ProductGroupInternalScope, Product
from .inventory import InventoryTransaction, InventoryBalance, ReferenceSequence
from .recipes import UnitConversion, MenuRecipe, MenuRecipeItem
from .counts import StockCheck
from .orders import Order, OrderItem
from .sync import SalesSyncLog

__all__ = [
    'Branch', 'Department', 'Unit', 'ProductGroup', 'ProductGroupInternalScope', 'Product',
    'InventoryTransaction', 'InventoryBalance', 'ReferenceSequence',
    'UnitConversion', 'MenuRecipe', 'MenuRecipeItem',
    'StockCheck',
    'Order', 'OrderItem',
    'SalesSyncLog',
]
